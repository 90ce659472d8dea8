"""
Inventory ledger tests.

Verifies:
- Stock never goes negative; a short decrement writes nothing
- Rows are created lazily and removed only when empty (or forced)
- Staff changes are audited; reads are public
"""

import pytest
from sqlalchemy import text
from sqlalchemy.orm.attributes import set_committed_value

from gemach.errors import InsufficientStockError, InvalidArgumentError, InvalidStateError, NotFoundError
from gemach.models import AuditLog, InventoryItem
from gemach.services import inventory_service


class TestAdjust:

    def test_first_addition_creates_row(self, db_session, location):
        assert inventory_service.get_quantity(location.id, "blue") == 0
        assert inventory_service.adjust(location.id, "blue", 5) == 5
        assert db_session.query(InventoryItem).filter_by(location_id=location.id).count() == 1

    def test_color_is_normalized(self, db_session, location):
        inventory_service.adjust(location.id, "  Blue ", 2)
        assert inventory_service.get_quantity(location.id, "BLUE") == 2

    def test_decrement_to_zero(self, db_session, stocked):
        assert inventory_service.adjust(stocked.id, "red", -1) == 0
        assert inventory_service.get_quantity(stocked.id, "red") == 0

    def test_short_decrement_raises_and_writes_nothing(self, db_session, stocked):
        with pytest.raises(InsufficientStockError) as exc:
            inventory_service.adjust(stocked.id, "blue", -4)
        assert exc.value.available == 3
        assert exc.value.requested == 4
        assert inventory_service.get_quantity(stocked.id, "blue") == 3

    def test_decrement_of_missing_color(self, db_session, location):
        with pytest.raises(InsufficientStockError):
            inventory_service.adjust(location.id, "green", -1)
        assert db_session.query(InventoryItem).filter_by(location_id=location.id).count() == 0

    @pytest.mark.parametrize("color", ["", "orange", None])
    def test_invalid_color(self, db_session, location, color):
        with pytest.raises(InvalidArgumentError):
            inventory_service.adjust(location.id, color, 1)

    @pytest.mark.parametrize("delta", [1.5, "2", True])
    def test_non_integer_delta(self, db_session, location, delta):
        with pytest.raises(InvalidArgumentError):
            inventory_service.adjust(location.id, "blue", delta)

    def test_unknown_location(self, db_session):
        with pytest.raises(NotFoundError):
            inventory_service.adjust(999999, "blue", 1)

    def test_audited_when_actor_given(self, db_session, stocked, operator_actor):
        inventory_service.adjust(stocked.id, "blue", 2, actor=operator_actor)
        entry = db_session.query(AuditLog).filter_by(action="inventory_adjusted").one()
        assert entry.entity_id == stocked.id
        assert entry.actor_user_id == operator_actor.user_id
        assert entry.metadata_json == {"color": "blue", "delta": 2, "quantity": 5}


class TestConcurrentAdjust:
    """
    A second request commits between our locked read and our flush; the
    version column turns our write into a StaleDataError, and the retry
    re-reads the winner's quantity.
    """

    @pytest.fixture
    def racing_writer(self, db_session, monkeypatch):
        real_get_item = inventory_service._get_item
        locked_reads = []

        def install(taken):
            def get_item(location_id, color, *, lock=False):
                item = real_get_item(location_id, color, lock=lock)
                if lock and not locked_reads and item is not None:
                    seen_quantity, seen_version = item.quantity, item.version_id
                    db_session.execute(
                        text(
                            "UPDATE inventory_items SET quantity = quantity - :taken, "
                            "version_id = version_id + 1 WHERE id = :id"
                        ),
                        {"taken": taken, "id": item.id},
                    )
                    db_session.commit()
                    item = real_get_item(location_id, color, lock=lock)
                    set_committed_value(item, "quantity", seen_quantity)
                    set_committed_value(item, "version_id", seen_version)
                if lock:
                    locked_reads.append(item.quantity if item else None)
                return item

            monkeypatch.setattr(inventory_service, "_get_item", get_item)
            return locked_reads

        return install

    def test_stale_decrement_rejected_after_reread(self, db_session, stocked, racing_writer):
        locked_reads = racing_writer(taken=1)

        with pytest.raises(InsufficientStockError) as exc:
            inventory_service.adjust(stocked.id, "red", -1)

        assert locked_reads == [1, 0]
        assert exc.value.available == 0
        db_session.expire_all()
        assert inventory_service.get_quantity(stocked.id, "red") == 0

    def test_stale_decrement_retried_against_winner(self, db_session, stocked, racing_writer):
        locked_reads = racing_writer(taken=1)

        assert inventory_service.adjust(stocked.id, "blue", -1) == 1

        assert locked_reads == [3, 2]
        db_session.expire_all()
        item = db_session.query(InventoryItem).filter_by(location_id=stocked.id, color="blue").one()
        assert item.quantity == 1
        assert item.version_id == 3


class TestSetAndRemove:

    def test_set_absolute_overrides(self, db_session, stocked, admin_actor):
        item = inventory_service.set_absolute(stocked.id, "blue", 10, actor=admin_actor)
        assert item.quantity == 10
        assert db_session.query(AuditLog).filter_by(action="inventory_set").count() == 1

    def test_set_absolute_rejects_negative(self, db_session, stocked):
        with pytest.raises(InvalidArgumentError):
            inventory_service.set_absolute(stocked.id, "blue", -1)
        assert inventory_service.get_quantity(stocked.id, "blue") == 3

    def test_remove_requires_force_while_stocked(self, db_session, stocked):
        with pytest.raises(InvalidStateError):
            inventory_service.remove_color(stocked.id, "blue")
        inventory_service.remove_color(stocked.id, "blue", force=True)
        assert inventory_service.get_quantity(stocked.id, "blue") == 0

    def test_remove_empty_color(self, db_session, stocked):
        inventory_service.set_absolute(stocked.id, "red", 0)
        inventory_service.remove_color(stocked.id, "red")
        colors = [item.color for item in inventory_service.get_by_location(stocked.id)]
        assert colors == ["blue"]

    def test_remove_missing_color(self, db_session, location):
        with pytest.raises(NotFoundError):
            inventory_service.remove_color(location.id, "pink")

    def test_summary_and_total(self, db_session, stocked):
        summary = inventory_service.get_inventory_summary(stocked.id)
        assert summary["colors"] == {"red": 1, "blue": 3}
        assert summary["total"] == 4
        assert inventory_service.total(stocked.id) == 4


class TestInventoryApi:

    def test_read_is_public(self, client, stocked):
        resp = client.get(f"/api/locations/{stocked.id}/inventory")
        assert resp.status_code == 200
        assert resp.json["total"] == 4

    def test_adjust_requires_auth(self, client, stocked):
        resp = client.post(f"/api/locations/{stocked.id}/inventory", json={"color": "blue", "quantity": 1})
        assert resp.status_code == 401

    def test_operator_adjusts_own_location(self, client, stocked, operator_headers):
        resp = client.post(
            f"/api/locations/{stocked.id}/inventory",
            json={"color": "blue", "quantity": -2},
            headers=operator_headers,
        )
        assert resp.status_code == 200
        assert resp.json["quantity"] == 1

    def test_operator_denied_other_location(self, client, stocked, other_headers):
        resp = client.put(
            f"/api/locations/{stocked.id}/inventory",
            json={"color": "blue", "quantity": 0},
            headers=other_headers,
        )
        assert resp.status_code == 403

    def test_short_stock_is_conflict(self, client, stocked, operator_headers):
        resp = client.post(
            f"/api/locations/{stocked.id}/inventory",
            json={"color": "red", "quantity": -2},
            headers=operator_headers,
        )
        assert resp.status_code == 409
        assert resp.json["code"] == "INSUFFICIENT_STOCK"
        assert resp.json["available"] == 1

    def test_delete_with_force(self, client, stocked, admin_headers):
        resp = client.delete(f"/api/locations/{stocked.id}/inventory/blue", headers=admin_headers)
        assert resp.status_code == 409
        resp = client.delete(f"/api/locations/{stocked.id}/inventory/blue?force=true", headers=admin_headers)
        assert resp.status_code == 200
