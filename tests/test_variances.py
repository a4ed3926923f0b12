"""Tests for expected variances."""

import pytest

from payroll_recon.database import (
    Base,
    CheckSeverity,
    CheckStatus,
    CheckType,
    ExpectedVariance,
    FirmRepository,
    create_async_engine,
    get_async_session_factory,
)
from payroll_recon.errors import NotFoundError, PermissionDeniedError, ValidationError
from payroll_recon.permissions import Role
from payroll_recon.reconciliation import (
    Actor,
    BankPayment,
    ExpectedVarianceService,
    ToleranceConfig,
    apply_expected_variances,
    validate_variance_definition,
)
from payroll_recon.reconciliation.checks import evaluate_register_net_to_bank_total
from payroll_recon.reconciliation.models import TotalWithRows

NET_TO_BANK = ToleranceConfig(absolute_cents=100, percent=0.05)


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    session_factory = get_async_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def failing_evaluation():
    """Net 300.00 against bank 250.00."""
    return evaluate_register_net_to_bank_total(
        TotalWithRows(total_cents=30000),
        TotalWithRows(total_cents=25000),
        "imp-register",
        "imp-bank",
        NET_TO_BANK,
    )


def variance(condition=None, effect=None, check_type=None, **kwargs):
    """Unsaved ExpectedVariance row."""
    row = ExpectedVariance(
        id=kwargs.pop("id", "var-1"),
        firm_id="firm-1",
        client_id="client-1",
        check_type=check_type,
        variance_type=kwargs.pop("variance_type", "OTHER"),
        active=kwargs.pop("active", True),
        archived_at=kwargs.pop("archived_at", None),
    )
    row.condition = condition
    row.effect = effect if effect is not None else {"downgradeTo": "WARN"}
    return row


class TestApplyExpectedVariances:
    """Tests for downgrading failed checks."""

    def test_amount_bounds_downgrade_to_warn(self, failing_evaluation):
        """Test that a 50.00 delta under a 60.00 bound becomes WARN/LOW."""
        rule = variance(
            condition={"amountBounds": {"max": 60}},
            effect={"downgradeTo": "WARN", "requiresNote": True},
            check_type="CHK_REGISTER_NET_TO_BANK_TOTAL",
        )
        result = apply_expected_variances(failing_evaluation, [rule])
        assert result.status == CheckStatus.WARN
        assert result.severity == CheckSeverity.LOW
        assert result.exception is None
        assert result.summary.endswith("Expected variance applied.")
        assert result.details.expected_variance.id == "var-1"
        assert result.details.expected_variance.requires_note is True
        assert failing_evaluation.status == CheckStatus.FAIL

    def test_downgrade_to_pass(self, failing_evaluation):
        """Test that a PASS effect reports INFO severity."""
        result = apply_expected_variances(failing_evaluation, [variance(effect={"downgradeTo": "PASS"})])
        assert result.status == CheckStatus.PASS
        assert result.severity == CheckSeverity.INFO

    def test_bounds_not_met(self, failing_evaluation):
        """Test that a delta outside the bounds is left failing."""
        rule = variance(condition={"amountBounds": {"max": 40}})
        result = apply_expected_variances(failing_evaluation, [rule])
        assert result.status == CheckStatus.FAIL
        assert result.exception is not None

    def test_percent_bounds(self, failing_evaluation):
        """Test percent bounds against the delta percent."""
        assert apply_expected_variances(
            failing_evaluation, [variance(condition={"pctBounds": {"min": 10, "max": 20}})],
        ).status == CheckStatus.WARN
        assert apply_expected_variances(
            failing_evaluation, [variance(condition={"pctBounds": {"max": 10}})],
        ).status == CheckStatus.FAIL

    def test_check_type_must_match(self, failing_evaluation):
        """Test that a variance scoped to another check is skipped."""
        rule = variance(check_type="CHK_JOURNAL_DEBITS_EQUAL_CREDITS")
        assert apply_expected_variances(failing_evaluation, [rule]).status == CheckStatus.FAIL

    def test_inactive_and_invalid_effects_are_skipped(self, failing_evaluation):
        """Test that archived variances and FAIL effects never apply."""
        from datetime import datetime

        rules = [
            variance(id="archived", archived_at=datetime.utcnow()),
            variance(id="inactive", active=False),
            variance(id="bad-effect", effect={"downgradeTo": "FAIL"}),
            variance(id="applies"),
        ]
        result = apply_expected_variances(failing_evaluation, rules)
        assert result.details.expected_variance.id == "applies"

    def test_first_match_wins(self, failing_evaluation):
        """Test that variances are tried in order."""
        rules = [variance(id="first", effect={"downgradeTo": "PASS"}), variance(id="second")]
        assert apply_expected_variances(failing_evaluation, rules).details.expected_variance.id == "first"

    def test_payee_and_reference_conditions(self, failing_evaluation):
        """Test substring matching against bank payments."""
        payments = [BankPayment(row_number=2, payee_key="director a", amount_cents=5000, reference="dir jan")]
        matching = variance(condition={"payeeContains": "Director", "referenceContains": "DIR"})
        missing = variance(condition={"payeeContains": "contractor"})
        assert apply_expected_variances(failing_evaluation, [matching], payments).status == CheckStatus.WARN
        assert apply_expected_variances(failing_evaluation, [missing], payments).status == CheckStatus.FAIL

    def test_passing_checks_are_untouched(self):
        """Test that only FAIL evaluations are downgraded."""
        passing = evaluate_register_net_to_bank_total(
            TotalWithRows(total_cents=30000), TotalWithRows(total_cents=30000), "r", "b", NET_TO_BANK,
        )
        assert apply_expected_variances(passing, [variance()]) is passing


class TestValidateVarianceDefinition:
    """Tests for strict variance validation."""

    def test_valid_definition(self):
        """Test a well-formed condition and effect."""
        assert validate_variance_definition({"amountBounds": {"min": 0, "max": 60}}, {"downgradeTo": "WARN"}) == []

    def test_invalid_effect(self):
        """Test that FAIL is not a downgrade target."""
        assert validate_variance_definition(None, {"downgradeTo": "FAIL"}) == [
            "Effect downgradeTo must be PASS or WARN."
        ]

    def test_invalid_bounds(self):
        """Test bound type, sign and ordering errors."""
        errors = validate_variance_definition(
            {"amountBounds": {"min": -1}, "pctBounds": {"min": 5, "max": 1}, "payeeContains": 3},
            {"downgradeTo": "PASS"},
        )
        assert "Amount bounds min must be a non-negative number." in errors
        assert "Percent bounds min cannot exceed max." in errors
        assert "payeeContains must be text." in errors


class TestExpectedVarianceService:
    """Tests for creating and archiving variances."""

    @pytest.fixture
    async def client_and_actor(self, db_session):
        """Firm, client and a reviewer actor."""
        repo = FirmRepository(db_session)
        firm = await repo.create_firm("Northwind Payroll")
        client = await repo.create_client(firm.id, "Contoso Ltd")
        return client, Actor(firm_id=firm.id, user_id="reviewer-1", role=Role.REVIEWER)

    async def test_create_and_archive(self, db_session, audit, client_and_actor):
        """Test the variance lifecycle and its audit events."""
        client, actor = client_and_actor
        service = ExpectedVarianceService(db_session, audit)

        created = await service.create(
            actor,
            client.id,
            variance_type="DIRECTORS_SEPARATE",
            effect={"downgradeTo": "WARN"},
            condition={"payeeContains": "director"},
            check_type=CheckType.CHK_REGISTER_NET_TO_BANK_TOTAL.value,
        )
        assert created.active is True
        assert created.condition == {"payeeContains": "director"}

        archived = await service.archive(actor, created.id)
        assert archived.active is False
        assert archived.archived_at is not None
        assert audit.actions() == ["EXPECTED_VARIANCE_CREATED", "EXPECTED_VARIANCE_ARCHIVED"]
        assert audit.events[0].metadata["check_type"] == "CHK_REGISTER_NET_TO_BANK_TOTAL"

    async def test_preparer_cannot_create(self, db_session, audit, client_and_actor):
        """Test that preparers lack the variance permission."""
        client, actor = client_and_actor
        preparer = actor.model_copy(update={"role": Role.PREPARER})
        with pytest.raises(PermissionDeniedError):
            await ExpectedVarianceService(db_session, audit).create(
                preparer, client.id, "OTHER", {"downgradeTo": "WARN"},
            )

    async def test_invalid_definition(self, db_session, audit, client_and_actor):
        """Test that every definition error is reported together."""
        client, actor = client_and_actor
        with pytest.raises(ValidationError) as exc_info:
            await ExpectedVarianceService(db_session, audit).create(
                actor, client.id, "SOMETHING", {"downgradeTo": "FAIL"}, check_type="CHK_NOPE",
            )
        errors = exc_info.value.details["errors"]
        assert "Effect downgradeTo must be PASS or WARN." in errors
        assert "Unknown variance type: SOMETHING." in errors
        assert "Unknown check type: CHK_NOPE." in errors

    async def test_client_from_another_firm(self, db_session, audit, client_and_actor):
        """Test that clients outside the actor's firm are not found."""
        client, actor = client_and_actor
        outsider = actor.model_copy(update={"firm_id": "other-firm"})
        with pytest.raises(NotFoundError):
            await ExpectedVarianceService(db_session, audit).create(
                outsider, client.id, "OTHER", {"downgradeTo": "WARN"},
            )
