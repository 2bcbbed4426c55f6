"""Fabric numbers, scan payloads and tolerant decoding of scanned codes.

Labels printed over the years use both ``-`` and ``/`` between the warp code
and the cut number, with and without zero padding. Decoding therefore never
parses a scan into a single fabric number; it expands it into every spelling
a stored cut could carry and lets the caller match any of them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import ValidationError

UNKNOWN_WARP_CODE = "UNKNOWN"
_JOINERS = ("-", "/")


def warp_code(warp_number: Optional[str]) -> str:
    code = (warp_number or "").strip()
    return code or UNKNOWN_WARP_CODE


def fabric_number(code: str, cut_number: int) -> str:
    return f"{code}-{cut_number:02d}"


def scan_payload(code: str, cut_number: int) -> str:
    return f"{code}/{cut_number:02d}"


def sub_cut_fabric_number(parent_fabric_number: str, sub_cut_number: int) -> str:
    return f"{parent_fabric_number}/{sub_cut_number:02d}"


def sub_cut_scan_payload(code: str, cut_number: int, sub_cut_number: int) -> str:
    return f"{code}/{cut_number:02d}/{sub_cut_number:02d}"


@dataclass(frozen=True, slots=True)
class DecodedScanCode:
    """A scanned code broken into its parts plus all equivalent fabric numbers."""

    raw: str
    warp_code: str
    cut_number: int
    sub_cut_number: Optional[int]
    candidates: Tuple[str, ...]

    @property
    def is_sub_cut(self) -> bool:
        return self.sub_cut_number is not None


def _parse_number(part: str, label: str, raw: str) -> int:
    text = part.strip()
    if not text.isdecimal():
        raise ValidationError(f"Invalid {label} {part!r} in scan code {raw!r}")
    return int(text)


def _spellings(number: int) -> Tuple[str, ...]:
    padded = f"{number:02d}"
    unpadded = str(number)
    return (padded,) if padded == unpadded else (padded, unpadded)


def _candidates(code: str, cut_number: int, sub_cut_number: Optional[int]) -> Tuple[str, ...]:
    seen = []
    for joiner in _JOINERS:
        for cut_text in _spellings(cut_number):
            base = f"{code}{joiner}{cut_text}"
            if sub_cut_number is None:
                spellings = [base]
            else:
                spellings = [f"{base}/{sub_text}" for sub_text in _spellings(sub_cut_number)]
            for spelling in spellings:
                if spelling not in seen:
                    seen.append(spelling)
    return tuple(seen)


def decode_scan_code(scanned: str) -> DecodedScanCode:
    """Split a scanned code and expand it into candidate fabric numbers.

    ``warp/cut`` yields a plain cut, ``warp/cut/sub`` a sub-cut. A value
    without ``/`` is read as ``warp-cut`` split on the last dash.
    """

    raw = (scanned or "").strip()
    if not raw:
        raise ValidationError("Scan code is empty")

    if "/" in raw:
        parts = raw.split("/")
    elif "-" in raw:
        parts = raw.rsplit("-", 1)
    else:
        raise ValidationError(f"Unrecognised scan code {raw!r}")

    if len(parts) not in (2, 3):
        raise ValidationError(f"Unrecognised scan code {raw!r}")

    code = parts[0].strip()
    if not code:
        raise ValidationError(f"Scan code {raw!r} has no warp number")
    cut_number = _parse_number(parts[1], "cut number", raw)
    sub_cut_number = (
        _parse_number(parts[2], "sub-cut number", raw) if len(parts) == 3 else None
    )
    return DecodedScanCode(
        raw=raw,
        warp_code=code,
        cut_number=cut_number,
        sub_cut_number=sub_cut_number,
        candidates=_candidates(code, cut_number, sub_cut_number),
    )


__all__ = [
    "UNKNOWN_WARP_CODE",
    "DecodedScanCode",
    "decode_scan_code",
    "fabric_number",
    "scan_payload",
    "sub_cut_fabric_number",
    "sub_cut_scan_payload",
    "warp_code",
]
