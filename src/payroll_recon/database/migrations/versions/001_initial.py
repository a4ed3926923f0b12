"""Initial migration - create firms, clients, pay runs, imports, templates and reconciliation tables

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create firms and clients tables
    op.create_table(
        'firms',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('region', sa.String(10), nullable=False, server_default='UK'),
        sa.Column('defaults_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'clients',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('firm_id', sa.String(36), sa.ForeignKey('firms.id'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('settings_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_clients_firm_id', 'clients', ['firm_id'])

    # Create pay_runs table
    op.create_table(
        'pay_runs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('firm_id', sa.String(36), sa.ForeignKey('firms.id'), nullable=False),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('clients.id'), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('period_label', sa.String(100), nullable=True),
        sa.Column('revision', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(50), nullable=False, server_default='DRAFT'),
        sa.Column('settings_json', sa.Text(), nullable=True),
        sa.Column('last_run_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('client_id', 'period_start', 'period_end', 'revision', name='uq_pay_runs_period_revision'),
    )
    op.create_index('ix_pay_runs_firm_id', 'pay_runs', ['firm_id'])
    op.create_index('ix_pay_runs_client_id', 'pay_runs', ['client_id'])
    op.create_index('ix_pay_runs_status', 'pay_runs', ['status'])

    # Create mapping_templates table
    op.create_table(
        'mapping_templates',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('firm_id', sa.String(36), sa.ForeignKey('firms.id'), nullable=False),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('clients.id'), nullable=True),
        sa.Column('source_type', sa.String(50), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='DRAFT'),
        sa.Column('source_columns_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('column_map_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('normalization_rules_json', sa.Text(), nullable=True),
        sa.Column('header_row_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sheet_name', sa.String(255), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('firm_id', 'client_id', 'source_type', 'name', 'version', name='uq_mapping_templates_version'),
    )
    op.create_index(
        'ix_mapping_templates_identity',
        'mapping_templates',
        ['firm_id', 'client_id', 'source_type', 'name'],
    )

    # Create imports table
    op.create_table(
        'imports',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('firm_id', sa.String(36), sa.ForeignKey('firms.id'), nullable=False),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('clients.id'), nullable=False),
        sa.Column('pay_run_id', sa.String(36), sa.ForeignKey('pay_runs.id'), nullable=False),
        sa.Column('source_type', sa.String(50), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('storage_uri', sa.String(1024), nullable=False),
        sa.Column('original_filename', sa.String(255), nullable=True),
        sa.Column('file_hash', sa.String(64), nullable=False),
        sa.Column('parse_status', sa.String(50), nullable=False, server_default='UPLOADED'),
        sa.Column('mapping_template_id', sa.String(36), sa.ForeignKey('mapping_templates.id'), nullable=True),
        sa.Column('uploaded_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('pay_run_id', 'source_type', 'version', name='uq_imports_source_version'),
        sa.UniqueConstraint('pay_run_id', 'source_type', 'file_hash', name='uq_imports_source_hash'),
    )
    op.create_index('ix_imports_firm_id', 'imports', ['firm_id'])
    op.create_index('ix_imports_pay_run_id', 'imports', ['pay_run_id'])

    # Create account_classifications and expected_variances tables
    op.create_table(
        'account_classifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('firm_id', sa.String(36), sa.ForeignKey('firms.id'), nullable=False),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('clients.id'), nullable=False),
        sa.Column('account_code', sa.String(100), nullable=False),
        sa.Column('account_name', sa.String(255), nullable=True),
        sa.Column('classification', sa.String(50), nullable=False, server_default='OTHER'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('firm_id', 'client_id', 'account_code', name='uq_account_classifications_code'),
    )

    op.create_table(
        'expected_variances',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('firm_id', sa.String(36), sa.ForeignKey('firms.id'), nullable=False),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('clients.id'), nullable=False),
        sa.Column('check_type', sa.String(100), nullable=True),
        sa.Column('variance_type', sa.String(50), nullable=False, server_default='OTHER'),
        sa.Column('condition_json', sa.Text(), nullable=True),
        sa.Column('effect_json', sa.Text(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('archived_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_expected_variances_client_id', 'expected_variances', ['client_id'])

    # Create reconciliation_runs, check_results and exceptions tables
    op.create_table(
        'reconciliation_runs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('firm_id', sa.String(36), sa.ForeignKey('firms.id'), nullable=False),
        sa.Column('pay_run_id', sa.String(36), sa.ForeignKey('pay_runs.id'), nullable=False),
        sa.Column('run_number', sa.Integer(), nullable=False),
        sa.Column('bundle_id', sa.String(50), nullable=False),
        sa.Column('bundle_version', sa.String(20), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='RUNNING'),
        sa.Column('input_summary_json', sa.Text(), nullable=True),
        sa.Column('executed_by', sa.String(255), nullable=True),
        sa.Column('superseded_at', sa.DateTime(), nullable=True),
        sa.Column('superseded_by_run_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('pay_run_id', 'run_number', name='uq_reconciliation_runs_number'),
    )
    op.create_index('ix_reconciliation_runs_pay_run_id', 'reconciliation_runs', ['pay_run_id'])

    op.create_table(
        'check_results',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('run_id', sa.String(36), sa.ForeignKey('reconciliation_runs.id'), nullable=False),
        sa.Column('check_type', sa.String(100), nullable=False),
        sa.Column('check_version', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('summary', sa.Text(), nullable=False),
        sa.Column('details_json', sa.Text(), nullable=True),
        sa.Column('evidence_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_check_results_run_id', 'check_results', ['run_id'])

    op.create_table(
        'exceptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('firm_id', sa.String(36), sa.ForeignKey('firms.id'), nullable=False),
        sa.Column('pay_run_id', sa.String(36), sa.ForeignKey('pay_runs.id'), nullable=False),
        sa.Column('run_id', sa.String(36), sa.ForeignKey('reconciliation_runs.id'), nullable=False),
        sa.Column('check_result_id', sa.String(36), sa.ForeignKey('check_results.id'), nullable=True),
        sa.Column('check_type', sa.String(100), nullable=False),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='OPEN'),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('evidence_json', sa.Text(), nullable=True),
        sa.Column('assigned_to', sa.String(255), nullable=True),
        sa.Column('resolution_note', sa.Text(), nullable=True),
        sa.Column('resolved_by', sa.String(255), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('superseded_at', sa.DateTime(), nullable=True),
        sa.Column('superseded_by_run_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_exceptions_pay_run_id', 'exceptions', ['pay_run_id'])
    op.create_index('ix_exceptions_run_id', 'exceptions', ['run_id'])
    op.create_index('ix_exceptions_status', 'exceptions', ['status'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_exceptions_status', table_name='exceptions')
    op.drop_index('ix_exceptions_run_id', table_name='exceptions')
    op.drop_index('ix_exceptions_pay_run_id', table_name='exceptions')
    op.drop_index('ix_check_results_run_id', table_name='check_results')
    op.drop_index('ix_reconciliation_runs_pay_run_id', table_name='reconciliation_runs')
    op.drop_index('ix_expected_variances_client_id', table_name='expected_variances')
    op.drop_index('ix_imports_pay_run_id', table_name='imports')
    op.drop_index('ix_imports_firm_id', table_name='imports')
    op.drop_index('ix_mapping_templates_identity', table_name='mapping_templates')
    op.drop_index('ix_pay_runs_status', table_name='pay_runs')
    op.drop_index('ix_pay_runs_client_id', table_name='pay_runs')
    op.drop_index('ix_pay_runs_firm_id', table_name='pay_runs')
    op.drop_index('ix_clients_firm_id', table_name='clients')

    # Drop tables
    op.drop_table('exceptions')
    op.drop_table('check_results')
    op.drop_table('reconciliation_runs')
    op.drop_table('expected_variances')
    op.drop_table('account_classifications')
    op.drop_table('imports')
    op.drop_table('mapping_templates')
    op.drop_table('pay_runs')
    op.drop_table('clients')
    op.drop_table('firms')
