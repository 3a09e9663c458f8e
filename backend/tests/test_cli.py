"""
CLI command tests run through Flask's CLI runner.
"""

import pytest

from discount_engine.services import accounting_service, allocation_service
from discount_engine.services.allocation_service import EXPORT_HEADER
from discount_engine.services.result_cache import make_cache_key
from discount_engine.time_utils import today


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def _applied(business, tx, amount="50000"):
    return allocation_service.create_allocation(
        {"pos_transaction_id": tx.id, "rule_type": "PROMOTIONAL",
         "total_discount_amount": amount, "status": "APPLIED"},
        None, business.id,
    )


class TestInitAccounts:

    def test_creates_then_reports_existing(self, runner, db_session, business_a):
        result = runner.invoke(args=["discounts", "init-accounts", "--business-id", str(business_a.id)])
        assert result.exit_code == 0
        assert "PASS Created accounts 4100, 4110, 4111, 4112, 4113, 2200" in result.output

        again = runner.invoke(args=["discounts", "init-accounts", "--business-id", str(business_a.id)])
        assert again.exit_code == 0
        assert "already exist" in again.output

    def test_unknown_business(self, runner, db_session):
        result = runner.invoke(args=["discounts", "init-accounts", "--business-id", "999"])
        assert result.exit_code == 1
        assert "Business 999 not found" in result.output


class TestReconcile:

    def test_unlinked_allocation_fails(self, runner, db_session, accounts_a, business_a, pos_tx):
        allocation = _applied(business_a, pos_tx)
        result = runner.invoke(args=["discounts", "reconcile", "--business-id", str(business_a.id)])
        assert result.exit_code == 1
        assert f"UNLINKED {allocation.allocation_number}" in result.output
        assert "FAIL Not reconciled" in result.output

    def test_posted_allocation_passes(self, runner, db_session, accounts_a, business_a, pos_tx):
        allocation = _applied(business_a, pos_tx)
        accounting_service.create_allocation_journal_entry(allocation.id, business_a.id, None)
        result = runner.invoke(args=[
            "discounts", "reconcile", "--business-id", str(business_a.id), "--as-of", today().isoformat(),
        ])
        assert result.exit_code == 0
        assert "PASS Reconciled" in result.output

    def test_bad_date(self, runner, db_session, business_a):
        result = runner.invoke(args=[
            "discounts", "reconcile", "--business-id", str(business_a.id), "--as-of", "18/10/2026",
        ])
        assert result.exit_code == 2


class TestExportsAndSweeps:

    def test_export_allocations(self, runner, db_session, business_a, pos_tx):
        allocation = _applied(business_a, pos_tx)
        day = today().isoformat()
        result = runner.invoke(args=[
            "discounts", "export-allocations", "--business-id", str(business_a.id), "--start", day, "--end", day,
        ])
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0] == ",".join(EXPORT_HEADER)
        assert lines[1].startswith(allocation.allocation_number)

    def test_export_journal_to_file(self, runner, db_session, accounts_a, business_a, pos_tx, tmp_path):
        allocation = _applied(business_a, pos_tx)
        accounting_service.create_allocation_journal_entry(allocation.id, business_a.id, None)
        target = tmp_path / "journal.csv"
        day = today().isoformat()

        result = runner.invoke(args=[
            "discounts", "export-journal", "--business-id", str(business_a.id),
            "--start", day, "--end", day, "--output", str(target),
        ])
        assert result.exit_code == 0
        assert f"PASS Wrote {target}" in result.output
        assert target.read_text(encoding="utf-8").startswith("Reference Number,")

    def test_unallocated_none(self, runner, db_session, business_a, pos_tx):
        result = runner.invoke(args=["discounts", "unallocated", "--business-id", str(business_a.id)])
        assert result.exit_code == 0
        assert "No unallocated discounts found." in result.output

    def test_unallocated_lists_ticket(self, runner, db_session, business_a, pos_tx):
        pos_tx.total_discount = 1000
        db_session.commit()
        result = runner.invoke(args=["discounts", "unallocated", "--business-id", str(business_a.id)])
        assert result.exit_code == 0
        assert "POS-0001" in result.output

    def test_cache_clear(self, runner, app, db_session, business_a):
        app.extensions["discount_cache"].set(make_cache_key(business_a.id, {"amount": "1.00"}), {})
        result = runner.invoke(args=["discounts", "cache-clear", "--business-id", str(business_a.id)])
        assert result.exit_code == 0
        assert f"PASS Dropped 1 cached result(s) for business {business_a.id}" in result.output
