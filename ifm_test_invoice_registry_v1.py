"""
Invoice Financing Marketplace (IFM) - Invoice Registry Tests
Version: 1.0.0

Mint, transfer, payment, amendment and burn transitions, including
the terminal paid state and per-supplier capacity.
"""

import pytest

from ifm_config import MarketplaceSettings
from ifm_collaborators_v1 import Transfer
from ifm_enforcement_v1 import (
    BURN_ADDRESS,
    AuthorizationError,
    CapacityError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError
)
from ifm_invoice_registry_v1 import (
    InvoiceRegistry,
    ERR_AUTHORITY_ALREADY_SET,
    ERR_AUTHORITY_NOT_VERIFIED,
    ERR_INVALID_AMOUNT,
    ERR_INVALID_BUYER,
    ERR_INVALID_CURRENCY,
    ERR_INVALID_DESCRIPTION,
    ERR_INVALID_DISCOUNT_RATE,
    ERR_INVALID_DUE_DATE,
    ERR_INVALID_FEE,
    ERR_INVALID_LOCATION,
    ERR_INVALID_PENALTY_RATE,
    ERR_INVALID_PRICE,
    ERR_INVALID_QUANTITY,
    ERR_INVALID_TERMS,
    ERR_INVOICE_EXPIRED,
    ERR_INVOICE_NOT_FOUND,
    ERR_INVOICE_PAID,
    ERR_MAX_INVOICES_EXCEEDED,
    ERR_NOT_AUTHORIZED,
    STATUS_PAID,
    STATUS_PENDING
)

SUPPLIER = "ST1SUPPLIER"
BUYER = "ST2BUYER"
AUTHORITY = "ST3AUTHORITY"
RECIPIENT = "ST6RECIPIENT"

# ============================================
# CONFIGURATION
# ============================================

class TestAuthority:
    """One-time authority and the gated creation fee."""

    def test_burn_address_rejected(self, clock, balances, titles, decision_ledger, settings):
        registry = InvoiceRegistry(clock, balances, titles, decision_ledger, settings)

        with pytest.raises(AuthorizationError) as exc:
            registry.set_authority(BURN_ADDRESS)

        assert exc.value.code == ERR_NOT_AUTHORIZED
        assert exc.value.registry == "invoice_registry"
        assert registry.get_authority() is None

    def test_authority_set_once(self, invoice_registry):
        with pytest.raises(ConflictError) as exc:
            invoice_registry.set_authority("ST9OTHER")

        assert exc.value.code == ERR_AUTHORITY_ALREADY_SET
        assert invoice_registry.get_authority() == AUTHORITY

    def test_creation_fee_requires_configured_authority(self, clock, balances, titles, decision_ledger, settings):
        registry = InvoiceRegistry(clock, balances, titles, decision_ledger, settings)

        with pytest.raises(AuthorizationError) as exc:
            registry.set_creation_fee(AUTHORITY, 10)

        assert exc.value.code == ERR_AUTHORITY_NOT_VERIFIED

    def test_creation_fee_gated_to_authority(self, invoice_registry):
        with pytest.raises(AuthorizationError) as exc:
            invoice_registry.set_creation_fee(SUPPLIER, 10)

        assert exc.value.code == ERR_NOT_AUTHORIZED

    def test_negative_creation_fee_rejected(self, invoice_registry):
        with pytest.raises(ValidationError) as exc:
            invoice_registry.set_creation_fee(AUTHORITY, -1)

        assert exc.value.code == ERR_INVALID_FEE

    def test_new_creation_fee_charged_on_mint(self, invoice_registry, balances, mint_args):
        assert invoice_registry.set_creation_fee(AUTHORITY, 750) == True

        invoice_registry.mint(SUPPLIER, **mint_args)

        assert balances.transfers == [Transfer(750, SUPPLIER, AUTHORITY)]

# ============================================
# MINT
# ============================================

class TestMint:
    """Validated creation of invoices."""

    def test_mint_echoes_inputs(self, invoice_registry, titles, balances, mint_args):
        """Stored record matches the inputs, pending and unpaid."""
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)
        invoice = invoice_registry.get_invoice(invoice_id)

        assert invoice_id == 0
        for name, value in mint_args.items():
            assert getattr(invoice, name) == value
        assert invoice.supplier == SUPPLIER
        assert invoice.paid == False
        assert invoice.status == STATUS_PENDING
        assert invoice.created_at == 0

        assert titles.owner_of(invoice_id) == SUPPLIER
        assert invoice_registry.get_invoices_by_supplier(SUPPLIER) == [0]
        assert invoice_registry.get_invoice_count() == 1
        assert balances.transfers == [Transfer(500, SUPPLIER, AUTHORITY)]

    def test_ids_are_sequential(self, invoice_registry, mint_args):
        ids = [invoice_registry.mint(SUPPLIER, **mint_args) for _ in range(3)]
        assert ids == [0, 1, 2]

    @pytest.mark.parametrize("field_name,value,code", [
        ("amount", 0, ERR_INVALID_AMOUNT),
        ("due_date", 0, ERR_INVALID_DUE_DATE),
        ("buyer", SUPPLIER, ERR_INVALID_BUYER),
        ("description", "", ERR_INVALID_DESCRIPTION),
        ("description", "x" * 501, ERR_INVALID_DESCRIPTION),
        ("currency", "EUR", ERR_INVALID_CURRENCY),
        ("discount_rate", 51, ERR_INVALID_DISCOUNT_RATE),
        ("penalty_rate", 101, ERR_INVALID_PENALTY_RATE),
        ("location", "", ERR_INVALID_LOCATION),
        ("location", "x" * 101, ERR_INVALID_LOCATION),
        ("terms", "x" * 1001, ERR_INVALID_TERMS),
        ("quantity", 0, ERR_INVALID_QUANTITY),
        ("unit_price", 0, ERR_INVALID_PRICE),
    ])
    def test_field_validation(self, invoice_registry, mint_args, field_name, value, code):
        mint_args[field_name] = value

        with pytest.raises(ValidationError) as exc:
            invoice_registry.mint(SUPPLIER, **mint_args)

        assert exc.value.code == code

    def test_boundary_values_accepted(self, invoice_registry, mint_args):
        mint_args.update(
            discount_rate=50,
            penalty_rate=100,
            description="x" * 500,
            location="x" * 100,
            terms="",
            due_date=1
        )
        assert invoice_registry.mint(SUPPLIER, **mint_args) == 0

    def test_authority_checked_last(self, clock, balances, titles, decision_ledger, settings, mint_args):
        registry = InvoiceRegistry(clock, balances, titles, decision_ledger, settings)

        with pytest.raises(AuthorizationError) as exc:
            registry.mint(SUPPLIER, **mint_args)
        assert exc.value.code == ERR_AUTHORITY_NOT_VERIFIED

        # A field error outranks the missing authority
        mint_args["amount"] = 0
        with pytest.raises(ValidationError):
            registry.mint(SUPPLIER, **mint_args)

    def test_failed_mint_has_no_side_effects(self, invoice_registry, titles, balances, mint_args):
        mint_args["unit_price"] = 0

        with pytest.raises(ValidationError):
            invoice_registry.mint(SUPPLIER, **mint_args)

        assert invoice_registry.get_invoice_count() == 0
        assert invoice_registry.get_invoices_by_supplier(SUPPLIER) == []
        assert balances.transfers == []
        assert titles.owner_of(0) is None

    def test_registry_capacity(self, clock, balances, titles, decision_ledger, mint_args):
        registry = InvoiceRegistry(
            clock, balances, titles, decision_ledger,
            MarketplaceSettings(max_invoices=1)
        )
        registry.set_authority(AUTHORITY)
        registry.mint(SUPPLIER, **mint_args)

        with pytest.raises(CapacityError) as exc:
            registry.mint("ST7OTHER", **mint_args)

        assert exc.value.code == ERR_MAX_INVOICES_EXCEEDED

    def test_per_supplier_cap_is_checked_before_mint(self, clock, balances, titles, decision_ledger, mint_args):
        registry = InvoiceRegistry(
            clock, balances, titles, decision_ledger,
            MarketplaceSettings(max_invoices_per_supplier=2)
        )
        registry.set_authority(AUTHORITY)
        registry.mint(SUPPLIER, **mint_args)
        registry.mint(SUPPLIER, **mint_args)

        with pytest.raises(CapacityError) as exc:
            registry.mint(SUPPLIER, **mint_args)

        assert exc.value.code == ERR_MAX_INVOICES_EXCEEDED
        assert registry.get_invoice_count() == 2
        assert registry.get_invoices_by_supplier(SUPPLIER) == [0, 1]
        assert len(balances.transfers) == 2

        # Other suppliers are unaffected
        assert registry.mint("ST7OTHER", **mint_args) == 2

# ============================================
# TRANSFER
# ============================================

class TestTransfer:
    """Title and supplier role move together before the due date."""

    def test_due_date_window(self, invoice_registry, clock, titles, mint_args):
        """Due date 100: transfer succeeds at 99, fails at 101."""
        early = invoice_registry.mint(SUPPLIER, **mint_args)
        late = invoice_registry.mint(SUPPLIER, **mint_args)

        clock.advance(99)
        assert invoice_registry.transfer(SUPPLIER, early, RECIPIENT) == True

        clock.advance(2)
        with pytest.raises(StateError) as exc:
            invoice_registry.transfer(SUPPLIER, late, RECIPIENT)

        assert exc.value.code == ERR_INVOICE_EXPIRED
        assert titles.owner_of(late) == SUPPLIER

    def test_transfer_at_due_date_is_expired(self, invoice_registry, clock, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)
        clock.advance(100)

        with pytest.raises(StateError):
            invoice_registry.transfer(SUPPLIER, invoice_id, RECIPIENT)

    def test_transfer_moves_title_and_index(self, invoice_registry, titles, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)

        invoice_registry.transfer(SUPPLIER, invoice_id, RECIPIENT)

        assert invoice_registry.get_invoice(invoice_id).supplier == RECIPIENT
        assert titles.owner_of(invoice_id) == RECIPIENT
        assert invoice_registry.get_invoices_by_supplier(SUPPLIER) == []
        assert invoice_registry.get_invoices_by_supplier(RECIPIENT) == [invoice_id]

    def test_only_supplier_transfers(self, invoice_registry, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)

        with pytest.raises(AuthorizationError) as exc:
            invoice_registry.transfer(BUYER, invoice_id, RECIPIENT)

        assert exc.value.code == ERR_NOT_AUTHORIZED

    def test_title_holder_must_be_caller(self, invoice_registry, titles, mint_args):
        """Title held elsewhere (for example in pool custody) blocks the transfer."""
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)
        titles.transfer(invoice_id, SUPPLIER, "contract")

        with pytest.raises(AuthorizationError):
            invoice_registry.transfer(SUPPLIER, invoice_id, RECIPIENT)

        assert invoice_registry.get_invoice(invoice_id).supplier == SUPPLIER

    def test_unknown_invoice(self, invoice_registry):
        with pytest.raises(NotFoundError) as exc:
            invoice_registry.transfer(SUPPLIER, 42, RECIPIENT)

        assert exc.value.code == ERR_INVOICE_NOT_FOUND

    def test_recipient_at_capacity(self, clock, balances, titles, decision_ledger, mint_args):
        registry = InvoiceRegistry(
            clock, balances, titles, decision_ledger,
            MarketplaceSettings(max_invoices_per_supplier=1)
        )
        registry.set_authority(AUTHORITY)
        ours = registry.mint(SUPPLIER, **mint_args)
        registry.mint(RECIPIENT, **mint_args)

        with pytest.raises(CapacityError):
            registry.transfer(SUPPLIER, ours, RECIPIENT)

        assert titles.owner_of(ours) == SUPPLIER

# ============================================
# PAYMENT (TERMINAL STATE)
# ============================================

class TestMarkPaid:
    """Paid is one-way and absorbs every later transition."""

    def test_only_buyer_marks_paid(self, invoice_registry, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)

        with pytest.raises(AuthorizationError):
            invoice_registry.mark_paid(SUPPLIER, invoice_id)

    def test_mark_paid(self, invoice_registry, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)

        assert invoice_registry.mark_paid(BUYER, invoice_id) == True

        invoice = invoice_registry.get_invoice(invoice_id)
        assert invoice.paid == True
        assert invoice.status == STATUS_PAID

    def test_terminal_state_is_absorbing(self, invoice_registry, titles, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)
        invoice_registry.mark_paid(BUYER, invoice_id)

        with pytest.raises(StateError) as exc:
            invoice_registry.mark_paid(BUYER, invoice_id)
        assert exc.value.code == ERR_INVOICE_PAID

        with pytest.raises(StateError):
            invoice_registry.transfer(SUPPLIER, invoice_id, RECIPIENT)
        with pytest.raises(StateError):
            invoice_registry.update_invoice(SUPPLIER, invoice_id, 2000, 200)
        with pytest.raises(StateError):
            invoice_registry.burn_invoice(SUPPLIER, invoice_id)

        invoice = invoice_registry.get_invoice(invoice_id)
        assert invoice.supplier == SUPPLIER
        assert invoice.amount == 1000
        assert titles.owner_of(invoice_id) == SUPPLIER

# ============================================
# AMENDMENT
# ============================================

class TestUpdateInvoice:

    def test_update_records_audit_entry(self, invoice_registry, clock, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)
        clock.advance(5)

        assert invoice_registry.update_invoice(SUPPLIER, invoice_id, 1500, 150) == True

        invoice = invoice_registry.get_invoice(invoice_id)
        assert invoice.amount == 1500
        assert invoice.due_date == 150
        assert invoice.created_at == 5

        update = invoice_registry.get_invoice_update(invoice_id)
        assert update.update_amount == 1500
        assert update.update_due_date == 150
        assert update.update_timestamp == 5
        assert update.updater == SUPPLIER

    def test_last_amendment_wins(self, invoice_registry, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)
        invoice_registry.update_invoice(SUPPLIER, invoice_id, 1500, 150)
        invoice_registry.update_invoice(SUPPLIER, invoice_id, 1200, 120)

        assert invoice_registry.get_invoice_update(invoice_id).update_amount == 1200

    def test_only_supplier_updates(self, invoice_registry, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)

        with pytest.raises(AuthorizationError):
            invoice_registry.update_invoice(BUYER, invoice_id, 1500, 150)

        assert invoice_registry.get_invoice_update(invoice_id) is None

    @pytest.mark.parametrize("new_amount,new_due_date,code", [
        (0, 150, ERR_INVALID_AMOUNT),
        (1500, 0, ERR_INVALID_DUE_DATE),
    ])
    def test_update_validation(self, invoice_registry, mint_args, new_amount, new_due_date, code):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)

        with pytest.raises(ValidationError) as exc:
            invoice_registry.update_invoice(SUPPLIER, invoice_id, new_amount, new_due_date)

        assert exc.value.code == code

# ============================================
# BURN
# ============================================

class TestBurn:

    def test_burn_removes_everything(self, invoice_registry, titles, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)
        invoice_registry.update_invoice(SUPPLIER, invoice_id, 1500, 150)

        assert invoice_registry.burn_invoice(SUPPLIER, invoice_id) == True

        assert invoice_registry.get_invoice(invoice_id) is None
        assert invoice_registry.get_invoice_update(invoice_id) is None
        assert titles.owner_of(invoice_id) is None
        assert invoice_registry.get_invoices_by_supplier(SUPPLIER) == []
        # Ids are never reused
        assert invoice_registry.get_invoice_count() == 1

    def test_burn_requires_title(self, invoice_registry, titles, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)
        titles.transfer(invoice_id, SUPPLIER, "contract")

        with pytest.raises(AuthorizationError):
            invoice_registry.burn_invoice(SUPPLIER, invoice_id)

        assert invoice_registry.get_invoice(invoice_id) is not None

    def test_burn_twice(self, invoice_registry, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)
        invoice_registry.burn_invoice(SUPPLIER, invoice_id)

        with pytest.raises(NotFoundError):
            invoice_registry.burn_invoice(SUPPLIER, invoice_id)

# ============================================
# READS
# ============================================

class TestReads:

    def test_reads_return_copies(self, invoice_registry, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)

        copy = invoice_registry.get_invoice(invoice_id)
        copy.amount = 1
        copy.paid = True

        stored = invoice_registry.get_invoice(invoice_id)
        assert stored.amount == 1000
        assert stored.paid == False

    def test_reads_of_missing_entries(self, invoice_registry):
        assert invoice_registry.get_invoice(7) is None
        assert invoice_registry.get_invoice_update(7) is None
        assert invoice_registry.get_invoices_by_supplier("ST0NOBODY") == []
        assert invoice_registry.get_creation_fee() == 500

    def test_to_dict(self, invoice_registry, mint_args):
        invoice_id = invoice_registry.mint(SUPPLIER, **mint_args)
        data = invoice_registry.get_invoice(invoice_id).to_dict()

        assert data['invoice_id'] == invoice_id
        assert data['status'] == STATUS_PENDING
        assert data['supplier'] == SUPPLIER

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
