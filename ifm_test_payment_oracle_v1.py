"""
Invoice Financing Marketplace (IFM) - Payment Oracle Tests
Version: 1.0.0

Roster management, admin-gated configuration and single-writer payment
verification.
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
    ValidationError
)
from ifm_payment_oracle_v1 import (
    PaymentOracle,
    ERR_AUTHORITY_NOT_VERIFIED,
    ERR_INVALID_AMOUNT,
    ERR_INVALID_CURRENCY,
    ERR_INVALID_EARLY_FLAG,
    ERR_INVALID_GRACE_PERIOD,
    ERR_INVALID_INTEREST_RATE,
    ERR_INVALID_INVOICE_ID,
    ERR_INVALID_LOCATION,
    ERR_INVALID_MAX_REPORTS,
    ERR_INVALID_PENALTY,
    ERR_INVALID_TIMESTAMP,
    ERR_INVALID_UPDATE_PARAM,
    ERR_INVALID_VOTING_THRESHOLD,
    ERR_MAX_ORACLES_EXCEEDED,
    ERR_NOT_AUTHORIZED,
    ERR_ORACLE_ALREADY_EXISTS,
    ERR_ORACLE_NOT_FOUND,
    ERR_PAYMENT_ALREADY_VERIFIED
)

ADMIN = "ST1TEST"
AUTHORITY = "ST5AUTHORITY"
ORACLE_A = "ST3ORACLE"
ORACLE_B = "ST4ORACLE"


def register(oracle, principal, oracle_args, name=None):
    """Register an oracle named after its principal, so name-index membership holds."""
    return oracle.register_oracle(principal, name or principal, **oracle_args)

# ============================================
# CONFIGURATION
# ============================================

class TestOracleConfiguration:

    def test_set_authority(self, clock, balances, decision_ledger, settings):
        oracle = PaymentOracle(clock, balances, decision_ledger, settings)

        with pytest.raises(AuthorizationError) as exc:
            oracle.set_authority(ADMIN, BURN_ADDRESS)
        assert exc.value.code == ERR_NOT_AUTHORIZED

        with pytest.raises(AuthorizationError) as exc:
            oracle.set_authority(ORACLE_A, AUTHORITY)
        assert exc.value.code == ERR_NOT_AUTHORIZED

        assert oracle.set_authority(ADMIN, AUTHORITY) == True
        assert oracle.get_authority() == AUTHORITY

        with pytest.raises(ConflictError) as exc:
            oracle.set_authority(ADMIN, "ST9OTHER")
        assert exc.value.code == ERR_AUTHORITY_NOT_VERIFIED

    def test_admin_from_constructor(self, clock, balances, decision_ledger, settings):
        oracle = PaymentOracle(clock, balances, decision_ledger, settings, admin="ST7DEPLOYER")

        with pytest.raises(AuthorizationError):
            oracle.set_authority(ADMIN, AUTHORITY)
        assert oracle.set_authority("ST7DEPLOYER", AUTHORITY) == True

    def test_setters_are_admin_only(self, oracle):
        for setter in (oracle.set_max_oracles, oracle.set_report_fee, oracle.set_max_reports_per_invoice):
            with pytest.raises(AuthorizationError) as exc:
                setter(ORACLE_A, 10)
            assert exc.value.code == ERR_NOT_AUTHORIZED

    def test_setter_bounds(self, oracle):
        with pytest.raises(ValidationError) as exc:
            oracle.set_max_oracles(ADMIN, 0)
        assert exc.value.code == ERR_INVALID_UPDATE_PARAM

        with pytest.raises(ValidationError) as exc:
            oracle.set_report_fee(ADMIN, -1)
        assert exc.value.code == ERR_INVALID_UPDATE_PARAM

        with pytest.raises(ValidationError) as exc:
            oracle.set_max_reports_per_invoice(ADMIN, 0)
        assert exc.value.code == ERR_INVALID_MAX_REPORTS

    def test_setters_apply(self, oracle):
        oracle.set_max_oracles(ADMIN, 3)
        oracle.set_report_fee(ADMIN, 0)
        oracle.set_max_reports_per_invoice(ADMIN, 2)

        assert oracle.get_max_oracles() == 3
        assert oracle.get_report_fee() == 0
        assert oracle.get_max_reports_per_invoice() == 2

# ============================================
# ROSTER
# ============================================

class TestRegisterOracle:

    def test_register(self, oracle, balances, clock, oracle_args):
        clock.advance(4)

        oracle_id = register(oracle, ORACLE_A, oracle_args)
        record = oracle.get_oracle(oracle_id)

        assert oracle_id == 0
        assert record.principal == ORACLE_A
        assert record.name == ORACLE_A
        assert record.location == "Nairobi"
        assert record.voting_threshold == 60
        assert record.registered_at == 4
        assert record.status == True
        assert oracle.get_oracle_count() == 1
        assert oracle.check_oracle_existence(ORACLE_A) == True
        assert balances.transfers == [Transfer(100, ORACLE_A, AUTHORITY)]

    def test_report_fee_follows_setting(self, oracle, balances, oracle_args):
        oracle.set_report_fee(ADMIN, 200)
        register(oracle, ORACLE_A, oracle_args)

        assert balances.transfers == [Transfer(200, ORACLE_A, AUTHORITY)]

    def test_duplicate_name(self, oracle, balances, oracle_args):
        register(oracle, ORACLE_A, oracle_args, name="Acme")

        with pytest.raises(ConflictError) as exc:
            register(oracle, ORACLE_B, oracle_args, name="Acme")

        assert exc.value.code == ERR_ORACLE_ALREADY_EXISTS
        assert oracle.get_oracle_count() == 1
        assert len(balances.transfers) == 1

    def test_requires_authority(self, clock, balances, decision_ledger, settings, oracle_args):
        oracle = PaymentOracle(clock, balances, decision_ledger, settings)

        with pytest.raises(AuthorizationError) as exc:
            register(oracle, ORACLE_A, oracle_args)

        assert exc.value.code == ERR_AUTHORITY_NOT_VERIFIED

    @pytest.mark.parametrize("field_name,value,code", [
        ("location", "", ERR_INVALID_LOCATION),
        ("location", "x" * 101, ERR_INVALID_LOCATION),
        ("voting_threshold", 0, ERR_INVALID_VOTING_THRESHOLD),
        ("voting_threshold", 101, ERR_INVALID_VOTING_THRESHOLD),
        ("grace_period", 31, ERR_INVALID_GRACE_PERIOD),
        ("interest_rate", 21, ERR_INVALID_INTEREST_RATE),
        ("penalty", 101, ERR_INVALID_PENALTY),
    ])
    def test_field_validation(self, oracle, oracle_args, field_name, value, code):
        oracle_args[field_name] = value

        with pytest.raises(ValidationError) as exc:
            register(oracle, ORACLE_A, oracle_args)

        assert exc.value.code == code

    @pytest.mark.parametrize("name", ["", "n" * 51])
    def test_name_length(self, oracle, oracle_args, name):
        with pytest.raises(ValidationError) as exc:
            oracle.register_oracle(ORACLE_A, name, **oracle_args)

        assert exc.value.code == ERR_INVALID_UPDATE_PARAM

    def test_threshold_upper_bound_inclusive(self, oracle, oracle_args):
        oracle_args["voting_threshold"] = 100
        assert register(oracle, ORACLE_A, oracle_args) == 0

    def test_capacity(self, oracle, oracle_args):
        oracle.set_max_oracles(ADMIN, 1)
        register(oracle, ORACLE_A, oracle_args)

        with pytest.raises(CapacityError) as exc:
            register(oracle, ORACLE_B, oracle_args)

        assert exc.value.code == ERR_MAX_ORACLES_EXCEEDED

class TestUpdateOracle:

    def test_update_reindexes_name(self, oracle, clock, oracle_args):
        oracle_id = register(oracle, ORACLE_A, oracle_args, name="Acme")
        clock.advance(7)

        assert oracle.update_oracle(ORACLE_A, oracle_id, "Acme Global", "Accra", 75) == True

        record = oracle.get_oracle(oracle_id)
        assert record.name == "Acme Global"
        assert record.location == "Accra"
        assert record.voting_threshold == 75
        assert record.registered_at == 7
        assert oracle.check_oracle_existence("Acme") == False
        assert oracle.check_oracle_existence("Acme Global") == True

    def test_keep_own_name(self, oracle, oracle_args):
        oracle_id = register(oracle, ORACLE_A, oracle_args, name="Acme")

        assert oracle.update_oracle(ORACLE_A, oracle_id, "Acme", "Accra", 75) == True
        assert oracle.check_oracle_existence("Acme") == True

    def test_name_taken_by_another_oracle(self, oracle, oracle_args):
        register(oracle, ORACLE_A, oracle_args, name="Acme")
        other = register(oracle, ORACLE_B, oracle_args, name="Zenith")

        with pytest.raises(ConflictError) as exc:
            oracle.update_oracle(ORACLE_B, other, "Acme", "Accra", 75)

        assert exc.value.code == ERR_ORACLE_ALREADY_EXISTS
        assert oracle.get_oracle(other).name == "Zenith"

    def test_unknown_oracle(self, oracle):
        with pytest.raises(NotFoundError) as exc:
            oracle.update_oracle(ORACLE_A, 99, "Acme", "Accra", 75)

        assert exc.value.code == ERR_ORACLE_NOT_FOUND

    def test_only_owner_updates(self, oracle, oracle_args):
        oracle_id = register(oracle, ORACLE_A, oracle_args)

        with pytest.raises(AuthorizationError) as exc:
            oracle.update_oracle(ORACLE_B, oracle_id, "Hijacked", "Accra", 75)

        assert exc.value.code == ERR_NOT_AUTHORIZED

# ============================================
# PAYMENT REPORTS
# ============================================

class TestReportPayment:

    def test_report(self, oracle, oracle_args, report_args):
        register(oracle, ORACLE_A, oracle_args)

        assert oracle.report_payment(ORACLE_A, 3, **report_args) == True

        payment = oracle.get_verified_payment(3)
        assert payment.invoice_id == 3
        assert payment.reporter == ORACLE_A
        assert payment.reported_at == 10
        assert payment.amount == 1000
        assert payment.currency == "STX"
        assert payment.early == False
        assert payment.status == True
        assert oracle.get_report_count(3) == 1

    def test_non_oracle_rejected(self, oracle, report_args):
        with pytest.raises(AuthorizationError) as exc:
            oracle.report_payment("ST9NOBODY", 3, **report_args)

        assert exc.value.code == ERR_NOT_AUTHORIZED
        assert oracle.get_verified_payment(3) is None

    def test_timestamp_in_past(self, oracle, clock, oracle_args, report_args):
        register(oracle, ORACLE_A, oracle_args)
        clock.advance(20)

        with pytest.raises(ValidationError) as exc:
            oracle.report_payment(ORACLE_A, 3, **report_args)

        assert exc.value.code == ERR_INVALID_TIMESTAMP

    def test_timestamp_at_current_height(self, oracle, clock, oracle_args, report_args):
        register(oracle, ORACLE_A, oracle_args)
        clock.advance(10)

        assert oracle.report_payment(ORACLE_A, 3, **report_args) == True

    @pytest.mark.parametrize("field_name,value,code", [
        ("amount", 0, ERR_INVALID_AMOUNT),
        ("currency", "EUR", ERR_INVALID_CURRENCY),
        ("early", "yes", ERR_INVALID_EARLY_FLAG),
        ("grace_period", 31, ERR_INVALID_GRACE_PERIOD),
        ("interest_rate", 21, ERR_INVALID_INTEREST_RATE),
        ("penalty", 101, ERR_INVALID_PENALTY),
    ])
    def test_field_validation(self, oracle, oracle_args, report_args, field_name, value, code):
        register(oracle, ORACLE_A, oracle_args)
        report_args[field_name] = value

        with pytest.raises(ValidationError) as exc:
            oracle.report_payment(ORACLE_A, 3, **report_args)

        assert exc.value.code == code
        assert oracle.get_report_count(3) == 0

    def test_negative_invoice_id(self, oracle, oracle_args, report_args):
        register(oracle, ORACLE_A, oracle_args)

        with pytest.raises(ValidationError) as exc:
            oracle.report_payment(ORACLE_A, -1, **report_args)

        assert exc.value.code == ERR_INVALID_INVOICE_ID

    def test_first_report_wins(self, oracle, oracle_args, report_args):
        """A second valid report fails even from a different oracle."""
        register(oracle, ORACLE_A, oracle_args)
        register(oracle, ORACLE_B, oracle_args)
        oracle.report_payment(ORACLE_A, 3, **report_args)

        for reporter in (ORACLE_A, ORACLE_B):
            with pytest.raises(ConflictError) as exc:
                oracle.report_payment(reporter, 3, **dict(report_args, amount=999))
            assert exc.value.code == ERR_PAYMENT_ALREADY_VERIFIED

        payment = oracle.get_verified_payment(3)
        assert payment.reporter == ORACLE_A
        assert payment.amount == 1000
        assert oracle.get_report_count(3) == 1

    def test_report_cap(self, oracle, oracle_args, report_args):
        """A full report log with no verified payment refuses further reports."""
        register(oracle, ORACLE_A, oracle_args)
        oracle.set_max_reports_per_invoice(ADMIN, 2)
        oracle.storage.payment_reports[7] = [7, 7]

        with pytest.raises(CapacityError) as exc:
            oracle.report_payment(ORACLE_A, 7, **report_args)

        assert exc.value.code == ERR_INVALID_MAX_REPORTS
        assert oracle.get_verified_payment(7) is None
        assert oracle.get_report_count(7) == 2

    def test_reports_for_other_invoices_unaffected(self, oracle, oracle_args, report_args):
        register(oracle, ORACLE_A, oracle_args)
        oracle.report_payment(ORACLE_A, 3, **report_args)

        assert oracle.report_payment(ORACLE_A, 4, **report_args) == True
        assert oracle.get_verified_payment(4).invoice_id == 4

# ============================================
# MEMBERSHIP MODES
# ============================================

class TestMembership:

    def test_name_mode_looks_up_caller_in_name_index(self, oracle, oracle_args, report_args):
        register(oracle, ORACLE_A, oracle_args, name="Acme")

        # The registering principal is not a name in the index
        with pytest.raises(AuthorizationError):
            oracle.report_payment(ORACLE_A, 3, **report_args)

        # Any caller whose principal equals a registered name passes
        assert oracle.report_payment("Acme", 3, **report_args) == True

    def test_principal_mode(self, clock, balances, decision_ledger, oracle_args, report_args):
        oracle = PaymentOracle(
            clock, balances, decision_ledger,
            MarketplaceSettings(oracle_membership="principal")
        )
        oracle.set_authority(ADMIN, AUTHORITY)
        register(oracle, ORACLE_A, oracle_args, name="Acme")

        with pytest.raises(AuthorizationError):
            oracle.report_payment("Acme", 3, **report_args)

        assert oracle.report_payment(ORACLE_A, 3, **report_args) == True

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
