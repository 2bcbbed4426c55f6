import pytest

from textile_tracker import InMemoryStore, ProductionService, Settings


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def settings():
    return Settings(fanout_workers=4)


@pytest.fixture
def service(store, settings):
    return ProductionService(store, settings)


@pytest.fixture
def order(service):
    return service.create_order(
        design_name="Oxford Stripe",
        design_number="D-4411",
        order_type="bulk",
        order_quantity=1000,
        warping_quantity=1100,
    )


@pytest.fixture
def loom(service):
    return service.register_loom("L-01", "ASHOK TEXTILES")


@pytest.fixture
def warp(service, order, loom):
    return service.create_warp(order.id, 500, loom.id, warp_number="W5")
