"""Integration tests describing the end-to-end Kadaele POS workflows.

These scenarios exercise the setup script, the workbook store, the ledgers,
and the sync engine together, reopening the store from disk between steps the
way the application does across restarts.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

import setup_excel
from conftest import FakeTransport, FixedClock
from kadaele_pos import cli, core_logic
from kadaele_pos.constants import CollectionKey, PaymentType, PurchaseStatus
from kadaele_pos.network import NetworkStatus


def _reopen(config_path, *, transport=None, network=None, clock=None) -> core_logic.RuntimeContext:
    """Load a fresh context so every read comes from the saved workbook."""

    context = core_logic.load_runtime_context(
        config_path,
        transport=transport or FakeTransport(),
        network=network or NetworkStatus(online=False),
        clock=clock or FixedClock(),
    )
    core_logic.ensure_schema_version(context)
    return context


def _credit_sale(context, selections, *, name="", phone="") -> core_logic.PurchaseDraft:
    return core_logic.PurchaseDraft(
        items=core_logic.build_purchase_items(context, selections),
        payment_type=PaymentType.CREDIT,
        customer_name=name,
        customer_phone=phone,
    )


def test_credit_lifecycle_survives_restarts(config_factory):
    """Sales, a payment and a void settle into consistent debtor totals on disk."""

    bundle = config_factory(with_sample_goods=True)
    context = _reopen(bundle.config_path)

    first = core_logic.add_purchase(context, _credit_sale(context, [("G004", 2)], name="Amina", phone="555 0101"))
    second = core_logic.add_purchase(context, _credit_sale(context, [("G007", 1), ("G004", 1)], phone="555-0101"))

    context = _reopen(bundle.config_path)
    (debtor,) = core_logic.list_debtors(context)
    assert debtor.total_due == Decimal("115")
    assert debtor.purchase_ids == (first.purchase_id, second.purchase_id)

    core_logic.record_payment(context, debtor.debtor_id, "40", [first.purchase_id])
    core_logic.void_purchase(context, second.purchase_id, "wrong customer")

    context = _reopen(bundle.config_path)
    (debtor,) = core_logic.list_debtors(context)
    assert debtor.total_due == Decimal("60")
    assert debtor.total_paid == Decimal("40")
    assert debtor.balance == Decimal("20")
    assert debtor.purchase_ids == (first.purchase_id,)
    assert core_logic.get_purchase(context, first.purchase_id).paid is True
    assert core_logic.get_purchase(context, second.purchase_id).status is PurchaseStatus.VOIDED


def test_refund_after_payment_leaves_credit_balance(config_factory, caplog):
    """Refunding a partly paid sale keeps the payment and flags the credit."""

    bundle = config_factory(with_sample_goods=True)
    context = _reopen(bundle.config_path)
    purchase = core_logic.add_purchase(context, _credit_sale(context, [("G001", 1)], name="Tomasi"))
    (debtor,) = core_logic.list_debtors(context)
    core_logic.record_payment(context, debtor.debtor_id, "20")

    caplog.set_level("WARNING")
    core_logic.refund_purchase(context, purchase.purchase_id, "50", "spoiled")

    (debtor,) = core_logic.list_debtors(_reopen(bundle.config_path))
    assert debtor.total_due == Decimal("0")
    assert debtor.balance == Decimal("-20")
    assert "carried as credit pending manual reconciliation" in caplog.text


def test_offline_work_is_delivered_when_connectivity_returns(config_factory):
    """Writes made offline reach the remote in order once the device is online."""

    bundle = config_factory(with_sample_goods=True)
    transport = FakeTransport()
    network = NetworkStatus(online=False)
    context = _reopen(bundle.config_path, transport=transport, network=network)

    core_logic.update_inventory_item(context, "G004", 12)
    core_logic.add_purchase(context, _credit_sale(context, [("G004", 1)], name="Amina"))
    assert transport.batches == []

    # Queue survives a restart.
    network = NetworkStatus(online=False)
    context = _reopen(bundle.config_path, transport=transport, network=network)
    assert core_logic.pending_sync_count(context) == 3

    network.set_online(True)

    assert transport.delivered_keys == ["inventory", "purchases", "debtors"]
    assert core_logic.pending_sync_count(context) == 0
    assert core_logic.last_sync(_reopen(bundle.config_path)) is not None


def test_backup_restores_catalogue_into_new_store(config_factory):
    """A goods/inventory export from one store restores into another."""

    source = _reopen(config_factory(with_sample_goods=True).config_path)
    core_logic.update_inventory_item(source, "G002", 4)
    document = core_logic.export_document(source)

    target_bundle = config_factory()
    target = _reopen(target_bundle.config_path)
    assert core_logic.import_document(target, document) == [CollectionKey.GOODS, CollectionKey.INVENTORY]

    report = {line.good.good_id: line for line in core_logic.stock_report(_reopen(target_bundle.config_path))}
    assert len(report) == len(setup_excel.SAMPLE_GOODS)
    assert report["G002"].stock_level == 4
    assert report["G001"].stock_level == 0


# ---------------------------------------------------------------------------
# Setup script
# ---------------------------------------------------------------------------


def test_setup_script_refuses_to_overwrite_without_force(config_factory, capsys):
    """Re-running setup on an existing store needs --force."""

    bundle = config_factory()

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 1
    assert "--force" in capsys.readouterr().out


def test_setup_script_force_recreates_store_with_sample_goods(config_factory):
    """--force with --with-sample-goods resets the store to the starter catalogue."""

    bundle = config_factory()
    context = _reopen(bundle.config_path)
    core_logic.add_good(context, name="Kava", price="15", good_id="K1")

    assert setup_excel.main(["--config", str(bundle.config_path), "--force", "--with-sample-goods"]) == 0

    goods = core_logic.list_goods(_reopen(bundle.config_path))
    assert [good.good_id for good in goods] == [f"G{index:03d}" for index in range(1, 9)]
    assert goods[3].name == "Bread"
    assert goods[3].price == Decimal("30")


def test_setup_script_reports_missing_config(tmp_path, capsys):
    """A missing config file is reported rather than raised."""

    assert setup_excel.main(["--config", str(tmp_path / "missing.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "command, expected",
    [
        (["refund", "--purchase-id", "nope", "--amount", "5"], 2),
        (["set-stock", "--item-id", "G001", "--stock-level", "-1"], 2),
        (["import", "--input", "absent.json"], 3),
    ],
)
def test_cli_exit_codes_for_failures(config_factory, command, expected):
    """Rule violations and missing files map onto distinct exit codes."""

    bundle = config_factory(with_sample_goods=True)

    assert cli.main(["--config", str(bundle.config_path), *command]) == expected


def test_cli_sale_edit_and_stock_report(config_factory, capsys):
    """A sale recorded and then edited through the CLI shows up in the reports."""

    bundle = config_factory(with_sample_goods=True)
    base = ["--config", str(bundle.config_path)]

    assert cli.main([*base, "set-stock", "--item-id", "G005", "--stock-level", "15"]) == 0
    assert cli.main([*base, "sale", "--item", "G005:1", "--payment-type", "cash", "--total", "60"]) == 0
    purchase_id = capsys.readouterr().out.splitlines()[-1].split("\t")[0]

    assert cli.main([*base, "edit-sale", "--purchase-id", purchase_id, "--customer-name", "Amina"]) == 0
    assert cli.main([*base, "sales"]) == 0
    sales = capsys.readouterr().out
    assert sales.splitlines()[-1].endswith("\tAmina")

    assert cli.main([*base, "stock"]) == 0
    assert "G005\tMilk (1L)\t15\tIn Stock" in capsys.readouterr().out.splitlines()
