"""Shared test fixtures and configuration."""

import os
import pytest
from datetime import date
from types import SimpleNamespace
from unittest.mock import patch
from typing import Dict, List, Optional

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RECON_FILE_READ_DELAY_MS", "0")

from sample_files import (
    ACCOUNT_CLASSIFICATIONS,
    SOURCE_FIXTURES,
    storage_uri_for,
)


@pytest.fixture
def mock_api_key():
    """Set up mock API key for authentication."""
    with patch.dict(os.environ, {"API_KEY": "test_api_key_12345"}):
        yield "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key):
    """Return headers with authentication only."""
    return {"Authorization": f"Bearer {mock_api_key}"}


@pytest.fixture
def audit():
    """In-memory audit recorder."""
    from payroll_recon.audit import InMemoryAuditRecorder

    return InMemoryAuditRecorder()


@pytest.fixture
def file_reader():
    """In-memory file reader holding a balanced set of source files."""
    from payroll_recon.reconciliation import InMemoryFileReader

    return InMemoryFileReader({
        storage_uri_for(source_type): contents
        for source_type, (contents, _) in SOURCE_FIXTURES.items()
    })


# Database fixtures for integration tests
@pytest.fixture
async def test_db_engine():
    """Create an in-memory SQLite database for testing."""
    from payroll_recon.database import Base, create_async_engine

    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(test_db_engine):
    """Session factory bound to the test database."""
    from payroll_recon.database import get_async_session_factory

    return get_async_session_factory(test_db_engine)


@pytest.fixture
def seed_pay_run(audit):
    """Return a coroutine that seeds a firm, client and a mapped pay run.

    The pay run has a REGISTER, BANK and GL import, each parsed and mapped
    with its own published template, and the client's GL accounts
    classified. ``sources`` adds optional imports; ``classify=False``
    leaves the chart of accounts empty.
    """
    from payroll_recon.database import FirmRepository, ImportStatus, transaction
    from payroll_recon.permissions import Role
    from payroll_recon.reconciliation import Actor, ApplyTemplateInput
    from payroll_recon.reconciliation.templates import MappingTemplateService
    from payroll_recon.services import AccountClassificationService, ImportService, PayRunService

    async def _seed(
        session_factory,
        sources: Optional[List[str]] = None,
        classify: bool = True,
        region: str = "UK",
        firm_defaults: Optional[Dict] = None,
        client_settings: Optional[Dict] = None,
    ) -> SimpleNamespace:
        sources = sources or ["REGISTER", "BANK", "GL"]
        async with transaction(session_factory) as session:
            firm_repo = FirmRepository(session)
            firm = await firm_repo.create_firm("Northwind Payroll", region, defaults=firm_defaults)
            client = await firm_repo.create_client(firm.id, "Contoso Ltd", settings=client_settings)
            actor = Actor(firm_id=firm.id, user_id="preparer-1", role=Role.PREPARER)

            pay_run = await PayRunService(session, audit).create(
                actor, client.id, date(2024, 1, 1), date(2024, 1, 31),
            )
            imports = {}
            templates = {}
            import_service = ImportService(session, audit)
            template_service = MappingTemplateService(session, audit)
            for source_type in sources:
                contents, column_map = SOURCE_FIXTURES[source_type]
                record, _ = await import_service.register_version(
                    actor,
                    pay_run.id,
                    source_type,
                    storage_uri=storage_uri_for(source_type),
                    file_hash=f"hash-{source_type.lower()}",
                    original_filename=f"{source_type.lower()}.csv",
                )
                await import_service.transition_status(actor, record.id, ImportStatus.PARSING.value)
                await import_service.transition_status(actor, record.id, ImportStatus.PARSED.value)
                result = await template_service.apply_mapping_template(actor, ApplyTemplateInput(
                    import_id=record.id,
                    source_type=source_type,
                    source_columns=contents.splitlines()[0].split(","),
                    column_map=column_map,
                    template_name=f"{source_type.title()} layout",
                ))
                imports[source_type] = record
                templates[source_type] = result

            if classify:
                classifications = AccountClassificationService(session, audit)
                for code, account_class in ACCOUNT_CLASSIFICATIONS.items():
                    await classifications.upsert(actor, client.id, code, account_class)

        return SimpleNamespace(
            firm=firm,
            client=client,
            pay_run=pay_run,
            actor=actor,
            imports=imports,
            templates=templates,
        )

    return _seed
