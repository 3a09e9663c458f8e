"""
Allocation algorithm, persistence and lifecycle tests.
"""

from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.orm.exc import StaleDataError

from discount_engine.models import DiscountAllocation
from discount_engine.services import allocation_service
from discount_engine.services.allocation_service import (
    AllocationError,
    AllocationNotFoundError,
    AllocationStateError,
    EXPORT_HEADER,
    allocate,
    allocate_by_custom_weights,
    allocate_by_line_amount,
    allocate_by_percentage,
    allocate_by_quantity,
    validate_allocation_method,
    validate_allocation_total,
)
from discount_engine.services.transaction_service import TransactionNotFoundError
from discount_engine.time_utils import today
from discount_engine.validation import ValidationError


def _shares(lines):
    return [line["allocated_discount"] for line in lines]


class TestAllocationAlgorithms:
    """Pure split arithmetic."""

    LINES = [
        {"id": 1, "amount": Decimal("300000"), "quantity": 3},
        {"id": 2, "amount": Decimal("200000"), "quantity": 1},
    ]

    def test_pro_rata_by_amount(self):
        lines = allocate_by_line_amount(self.LINES, 50000)
        assert _shares(lines) == [Decimal("30000.00"), Decimal("20000.00")]
        assert lines[0]["allocation_percentage"] == Decimal("10.0000")
        assert lines[0]["line_item_id"] == 1

    def test_last_line_absorbs_rounding(self):
        lines = [{"id": i, "amount": 100} for i in range(3)]
        assert _shares(allocate_by_line_amount(lines, 100)) == [
            Decimal("33.33"), Decimal("33.33"), Decimal("33.34"),
        ]

    def test_pro_rata_by_quantity(self):
        lines = allocate_by_quantity(self.LINES, 40000)
        assert _shares(lines) == [Decimal("30000.00"), Decimal("10000.00")]
        assert [line["discount_per_unit"] for line in lines] == [Decimal("10000.00"), Decimal("10000.00")]

    def test_custom_weights_are_normalized(self):
        lines = allocate_by_custom_weights(self.LINES, [2, 2], 1000)
        assert _shares(lines) == [Decimal("500.00"), Decimal("500.00")]
        assert [line["allocation_weight"] for line in lines] == [Decimal("0.500000"), Decimal("0.500000")]

    def test_custom_weights_rebalance_into_line_amounts(self):
        lines = [{"id": 1, "amount": 100}, {"id": 2, "amount": 100}, {"id": 3, "amount": 1}]
        shares = _shares(allocate_by_custom_weights(lines, [0, 0, 1], 50))
        assert shares == [Decimal("0.00"), Decimal("49.00"), Decimal("1.00")]
        assert sum(shares) == Decimal("50.00")

    def test_custom_weights_validation(self):
        with pytest.raises(AllocationError):
            allocate_by_custom_weights(self.LINES, [1], 100)
        with pytest.raises(AllocationError):
            allocate_by_custom_weights(self.LINES, [0, 0], 100)
        with pytest.raises(AllocationError):
            allocate_by_custom_weights(self.LINES, [-1, 2], 100)

    def test_fixed_percentage(self):
        assert _shares(allocate_by_percentage(self.LINES, 10)) == [Decimal("30000.00"), Decimal("20000.00")]
        with pytest.raises(AllocationError):
            allocate_by_percentage(self.LINES, 101)

    def test_fixed_percentage_from_total_adds_up(self):
        lines = [{"id": i, "amount": 100} for i in range(3)]
        shares = _shares(allocate("FIXED_PERCENTAGE", lines, 100))
        assert shares == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]

    def test_total_above_lines_rejected(self):
        with pytest.raises(AllocationError):
            allocate_by_line_amount(self.LINES, 500001)

    def test_zero_total(self):
        assert _shares(allocate_by_line_amount(self.LINES, 0)) == [Decimal("0.00"), Decimal("0.00")]

    def test_empty_lines(self):
        assert allocate_by_line_amount([], 100) == []

    def test_method_validation(self):
        assert validate_allocation_method("pro_rata_quantity") == "PRO_RATA_QUANTITY"
        assert validate_allocation_method(None) == "PRO_RATA_AMOUNT"
        with pytest.raises(AllocationError):
            validate_allocation_method("ROUND_ROBIN")

    def test_validate_allocation_total(self):
        check = validate_allocation_total([{"allocated_discount": "10.00"}, {"allocated_discount": "5.00"}], 15)
        assert check["valid"] is True
        check = validate_allocation_total([{"allocated_discount": "10.00"}], 15)
        assert check["valid"] is False
        assert check["difference"] == Decimal("5.00")


class TestAllocationPersistence:

    def test_create_from_transaction_lines(self, db_session, business_a, pos_tx):
        allocation = allocation_service.create_allocation(
            {"pos_transaction_id": pos_tx.id, "rule_type": "category", "discount_rule_id": 4,
             "total_discount_amount": "50000"},
            user_id=1,
            business_id=business_a.id,
        )

        assert allocation.status == "PENDING"
        assert allocation.applied_at is None
        assert allocation.rule_type == "CATEGORY"
        assert allocation.allocation_number == f"DA-{today():%Y-%m}-00001"
        assert [line.allocated_discount for line in allocation.lines] == [Decimal("30000.00"), Decimal("20000.00")]
        assert [line.line_item_id for line in allocation.lines] == [item.id for item in pos_tx.items]

    def test_numbers_increase(self, db_session, business_a, pos_tx):
        data = {"pos_transaction_id": pos_tx.id, "total_discount_amount": "10"}
        first = allocation_service.create_allocation(data, None, business_a.id)
        second = allocation_service.create_allocation(data, None, business_a.id)
        assert first.allocation_number.endswith("-00001")
        assert second.allocation_number.endswith("-00002")

    def test_invoice_with_quantity_method(self, db_session, business_a, invoice):
        allocation = allocation_service.create_allocation(
            {"transaction_type": "INVOICE", "transaction_id": invoice.id,
             "total_discount_amount": "30000", "allocation_method": "PRO_RATA_QUANTITY", "status": "APPLIED"},
            user_id=1,
            business_id=business_a.id,
        )
        assert allocation.invoice_id == invoice.id
        assert allocation.status == "APPLIED"
        assert allocation.applied_at is not None
        assert [line.allocated_discount for line in allocation.lines] == [Decimal("10000.00"), Decimal("20000.00")]

    def test_precomputed_lines_must_add_up(self, db_session, business_a, pos_tx):
        with pytest.raises(AllocationError):
            allocation_service.create_allocation(
                {"pos_transaction_id": pos_tx.id, "total_discount_amount": "100",
                 "lines": [{"line_item_id": 1, "original_amount": "300", "allocated_discount": "60"}]},
                None, business_a.id,
            )
        assert db_session.query(DiscountAllocation).count() == 0

    def test_line_cannot_exceed_its_amount(self, db_session, business_a, pos_tx):
        with pytest.raises(AllocationError):
            allocation_service.create_allocation(
                {"pos_transaction_id": pos_tx.id, "total_discount_amount": "100",
                 "lines": [{"line_item_id": 1, "original_amount": "50", "allocated_discount": "100"}]},
                None, business_a.id,
            )

    def test_input_rejections(self, db_session, business_a, pos_tx, invoice):
        with pytest.raises(AllocationError):
            allocation_service.create_allocation(
                {"pos_transaction_id": pos_tx.id, "invoice_id": invoice.id, "total_discount_amount": "1"},
                None, business_a.id,
            )
        with pytest.raises(AllocationError):
            allocation_service.create_allocation(
                {"pos_transaction_id": pos_tx.id, "total_discount_amount": "0"}, None, business_a.id,
            )
        with pytest.raises(AllocationError):
            allocation_service.create_allocation(
                {"pos_transaction_id": pos_tx.id, "total_discount_amount": "1",
                 "discount_rule_id": 1, "promotional_discount_id": 2},
                None, business_a.id,
            )

    def test_cross_tenant_transaction_rejected(self, db_session, business_a, pos_tx_b):
        with pytest.raises(TransactionNotFoundError):
            allocation_service.create_allocation(
                {"pos_transaction_id": pos_tx_b.id, "total_discount_amount": "10"}, None, business_a.id,
            )

    def test_cross_tenant_read_blocked(self, db_session, business_a, business_b, pos_tx):
        allocation = allocation_service.create_allocation(
            {"pos_transaction_id": pos_tx.id, "total_discount_amount": "10"}, None, business_a.id,
        )
        with pytest.raises(AllocationNotFoundError):
            allocation_service.get_allocation(allocation.id, business_b.id)

    def test_get_with_lines_and_by_transaction(self, db_session, business_a, pos_tx):
        allocation = allocation_service.create_allocation(
            {"pos_transaction_id": pos_tx.id, "total_discount_amount": "10"}, None, business_a.id,
        )
        data = allocation_service.get_allocation_with_lines(allocation.id, business_a.id)
        assert data["total_discount_amount"] == "10.00"
        assert len(data["lines"]) == 2

        listed = allocation_service.get_transaction_allocations(pos_tx.id, "POS", business_a.id)
        assert [a["id"] for a in listed] == [allocation.id]
        assert allocation_service.get_transaction_allocations(pos_tx.id, "INVOICE", business_a.id) == []


class TestAllocationLifecycle:

    @pytest.fixture
    def pending(self, db_session, business_a, pos_tx):
        return allocation_service.create_allocation(
            {"pos_transaction_id": pos_tx.id, "rule_type": "VOLUME", "discount_rule_id": 1,
             "total_discount_amount": "25000"},
            1, business_a.id,
        )

    def test_apply_then_void(self, db_session, business_a, pos_tx, pending):
        applied = allocation_service.apply_allocation(pending.id, 1, business_a.id)
        assert applied.status == "APPLIED"
        assert allocation_service.can_void_allocation(pending.id, business_a.id)

        voided = allocation_service.void_allocation(pending.id, "Customer complaint", 2, business_a.id)
        assert voided.status == "VOID"
        assert voided.rejection_reason == "Customer complaint"
        assert voided.voided_by_user_id == 2
        assert voided.voided_at is not None
        assert pos_tx.total_discount == Decimal("0.00")

    def test_apply_twice_rejected(self, db_session, business_a, pending):
        allocation_service.apply_allocation(pending.id, 1, business_a.id)
        with pytest.raises(AllocationStateError):
            allocation_service.apply_allocation(pending.id, 1, business_a.id)

    def test_void_requires_reason_and_applied_state(self, db_session, business_a, pending):
        with pytest.raises(AllocationError):
            allocation_service.void_allocation(pending.id, "  ", 1, business_a.id)
        with pytest.raises(AllocationStateError):
            allocation_service.void_allocation(pending.id, "Wrong ticket", 1, business_a.id)
        assert not allocation_service.can_void_allocation(pending.id, business_a.id)

    def test_void_is_terminal(self, db_session, business_a, pending):
        allocation_service.apply_allocation(pending.id, 1, business_a.id)
        allocation_service.void_allocation(pending.id, "Wrong ticket", 1, business_a.id)
        with pytest.raises(AllocationStateError):
            allocation_service.void_allocation(pending.id, "Again", 1, business_a.id)
        with pytest.raises(AllocationStateError):
            allocation_service.apply_allocation(pending.id, 1, business_a.id)

    def test_void_recomputes_transaction_total(self, db_session, business_a, pos_tx):
        keep = allocation_service.create_allocation(
            {"pos_transaction_id": pos_tx.id, "total_discount_amount": "1000", "status": "APPLIED"},
            1, business_a.id,
        )
        drop = allocation_service.create_allocation(
            {"pos_transaction_id": pos_tx.id, "total_discount_amount": "500", "status": "APPLIED"},
            1, business_a.id,
        )
        allocation_service.void_allocation(drop.id, "Duplicate", 1, business_a.id)
        assert pos_tx.total_discount == keep.total_discount_amount

    def test_concurrent_update_detected(self, db_session, business_a, pending):
        assert pending.status == "PENDING"
        # Another session bumped the row after we loaded it
        db_session.execute(
            update(DiscountAllocation)
            .where(DiscountAllocation.id == pending.id)
            .values(version_id=DiscountAllocation.version_id + 1)
            .execution_options(synchronize_session=False)
        )
        pending.status = "APPLIED"
        with pytest.raises(StaleDataError):
            db_session.flush()
        db_session.rollback()


class TestSweepsAndReports:

    def test_unallocated_discounts(self, db_session, business_a, pos_tx, invoice):
        pos_tx.total_discount = Decimal("5000")
        db_session.commit()

        rows = allocation_service.get_unallocated_discounts(business_a.id)
        assert [(r["transaction_type"], r["transaction_id"]) for r in rows] == [("POS", pos_tx.id)]
        assert rows[0]["total_discount"] == "5000.00"

        allocation_service.create_allocation(
            {"pos_transaction_id": pos_tx.id, "total_discount_amount": "5000"}, None, business_a.id,
        )
        assert allocation_service.get_unallocated_discounts(business_a.id) == []

    def test_report_and_export(self, db_session, business_a, pos_tx, invoice):
        allocation_service.create_allocation(
            {"pos_transaction_id": pos_tx.id, "total_discount_amount": "1000", "status": "APPLIED"},
            None, business_a.id,
        )
        allocation_service.create_allocation(
            {"invoice_id": invoice.id, "total_discount_amount": "3000"}, None, business_a.id,
        )

        report = allocation_service.get_allocation_report(business_a.id, today(), today())
        summary = report["summary"]
        assert summary["total_allocations"] == 2
        assert summary["grand_total_discount"] == "4000.00"
        assert summary["pos_count"] == 1
        assert summary["invoice_count"] == 1
        assert summary["applied_count"] == 1
        assert summary["pending_count"] == 1
        assert sum(row["allocation_count"] for row in report["daily_breakdown"]) == 2

        csv_text = allocation_service.export_allocations(business_a.id, today(), today())
        rows = csv_text.strip().split("\n")
        assert rows[0] == ",".join(EXPORT_HEADER)
        assert len(rows) == 3
        assert any("INV-0001" in row for row in rows)

    def test_report_rejects_inverted_range(self, db_session, business_a):
        with pytest.raises(ValidationError):
            allocation_service.get_allocation_report(business_a.id, "2026-10-18", "2026-10-01")

    def test_bulk_create_reports_each_item(self, db_session, business_a, pos_tx):
        results = allocation_service.bulk_create_allocations(
            [
                {"pos_transaction_id": pos_tx.id, "total_discount_amount": "100"},
                {"pos_transaction_id": 999999, "total_discount_amount": "100"},
                {"pos_transaction_id": pos_tx.id, "total_discount_amount": "-5"},
            ],
            user_id=1,
            business_id=business_a.id,
        )
        assert [r["success"] for r in results] == [True, False, False]
        assert results[1]["transaction_id"] == 999999
        assert db_session.query(DiscountAllocation).count() == 1
