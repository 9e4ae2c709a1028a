"""payroll initial schema (security, masters, employees, config, runs)

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2025-11-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CONFIG_STATUSES = ('draft', 'approved', 'retired')
RUN_STATUSES = ('draft', 'published', 'approved', 'processed', 'cancelled', 'rejected')


def _money(name, nullable=False):
    return sa.Column(name, sa.Numeric(14, 2), nullable=nullable, server_default='0' if not nullable else None)


def upgrade() -> None:
    # ---- security ----
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'roles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(50), nullable=False, unique=True),
    )
    op.create_table(
        'permissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(120), nullable=False, unique=True),
        sa.Column('name', sa.String(150), nullable=True),
    )
    op.create_table(
        'user_roles',
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
    )
    op.create_table(
        'role_permissions',
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('permission_id', sa.Integer(), sa.ForeignKey('permissions.id', ondelete='CASCADE'), primary_key=True),
    )

    # ---- masters ----
    op.create_table(
        'companies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(50), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='EGP'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'departments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('name', sa.String(120), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('company_id', 'name', name='uq_department_company_name'),
    )
    op.create_table(
        'designations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('name', sa.String(120), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('department_id', 'name', name='uq_designation_dept_name'),
    )

    # ---- employees ----
    op.create_table(
        'employees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('designation_id', sa.Integer(), sa.ForeignKey('designations.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True, unique=True),
        sa.Column('code', sa.String(32), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('first_name', sa.String(80), nullable=False),
        sa.Column('last_name', sa.String(80), nullable=True),
        sa.Column('doj', sa.Date(), nullable=True),
        sa.Column('dol', sa.Date(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='active'),
        _money('base_salary'),
        sa.Column('hr_event', sa.Enum('NEW_HIRE', 'RESIGNATION', 'TERMINATION', 'NORMAL',
                                      name='employee_hr_event_enum'),
                  nullable=False, server_default='NORMAL'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('company_id', 'code', name='uq_employee_company_code'),
    )
    op.create_index('ix_emp_company_id', 'employees', ['company_id'])
    op.create_index('ix_emp_dept_id', 'employees', ['department_id'])

    op.create_table(
        'employee_attendance',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('working_days', sa.Integer(), nullable=False, server_default='22'),
        sa.Column('absent_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('overtime_hours', sa.Numeric(6, 2), nullable=False, server_default='0'),
        sa.UniqueConstraint('employee_id', 'period_start', 'period_end', name='uq_emp_attendance_period'),
    )
    op.create_table(
        'employee_bank_accounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False),
        sa.Column('bank_name', sa.String(80), nullable=True),
        sa.Column('account_number', sa.String(40), nullable=True),
        sa.Column('iban', sa.String(34), nullable=True),
        sa.Column('swift_code', sa.String(11), nullable=True),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_employee_bank_accounts_employee_id', 'employee_bank_accounts', ['employee_id'])
    op.create_index('ix_empbank_primary', 'employee_bank_accounts', ['employee_id', 'is_primary'])

    # ---- payroll config ----
    op.create_table(
        'tax_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(80), nullable=False),
        sa.Column('rate', sa.Numeric(6, 4), nullable=False),
        sa.Column('status', sa.Enum(*CONFIG_STATUSES, name='tax_rule_status_enum'),
                  nullable=False, server_default='draft'),
        sa.Column('scope_company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=True),
        sa.Column('scope_department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date(), nullable=True),
        sa.Column('approved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_taxrule_resolve', 'tax_rules',
                    ['status', 'scope_company_id', 'scope_department_id', 'effective_from', 'priority'])

    op.create_table(
        'allowance_definitions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(80), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('status', sa.Enum(*CONFIG_STATUSES, name='allowance_status_enum'),
                  nullable=False, server_default='draft'),
        sa.Column('scope_company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=True),
        sa.Column('scope_department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=True),
        sa.Column('effective_from', sa.Date(), nullable=True),
        sa.Column('effective_to', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    # ---- runs ----
    op.create_table(
        'payroll_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_code', sa.String(32), nullable=False, unique=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=True),
        sa.Column('entity', sa.String(120), nullable=True),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('status', sa.Enum(*RUN_STATUSES, name='payroll_run_status_enum'),
                  nullable=False, server_default='draft'),
        sa.Column('payment_status', sa.Enum('pending', 'processed', 'failed', name='payroll_run_payment_enum'),
                  nullable=False, server_default='pending'),
        sa.Column('employee_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('exception_count', sa.Integer(), nullable=False, server_default='0'),
        _money('total_gross'),
        _money('total_deductions'),
        _money('total_net_pay'),
        sa.Column('tax_rule_id', sa.Integer(), sa.ForeignKey('tax_rules.id'), nullable=True),
        sa.Column('tax_rate', sa.Numeric(6, 4), nullable=True),
        sa.Column('specialist_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('published_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('published_at', sa.DateTime(), nullable=True),
        sa.Column('approved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.String(255), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payroll_run_period', 'payroll_runs', ['company_id', 'period_start', 'period_end'])

    op.create_table(
        'employee_payroll_details',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_id', sa.Integer(), sa.ForeignKey('payroll_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id'), nullable=False),
        _money('base_salary'),
        _money('allowances_total'),
        _money('signing_bonus'),
        _money('termination_benefit'),
        _money('bonus'),
        _money('benefit'),
        _money('gross_salary'),
        sa.Column('tax_rate', sa.Numeric(6, 4), nullable=False, server_default='0'),
        _money('tax_amount'),
        _money('penalty_total'),
        _money('adjustment_deductions'),
        _money('deductions_total'),
        _money('net_pay'),
        sa.Column('bank_status', sa.Enum('valid', 'missing', 'invalid', name='payroll_bank_status_enum'),
                  nullable=False, server_default='valid'),
        sa.Column('hr_event', sa.String(20), nullable=False, server_default='NORMAL'),
        sa.Column('working_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('absent_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('overtime_hours', sa.Numeric(6, 2), nullable=False, server_default='0'),
        sa.Column('calc_meta', sa.JSON(), nullable=True),
        sa.Column('computed_at', sa.DateTime(), nullable=True),
        sa.Column('frozen_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('run_id', 'employee_id', name='uq_detail_run_employee'),
    )
    op.create_index('ix_employee_payroll_details_run_id', 'employee_payroll_details', ['run_id'])
    op.create_index('ix_employee_payroll_details_employee_id', 'employee_payroll_details', ['employee_id'])

    op.create_table(
        'payslips',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_id', sa.Integer(), sa.ForeignKey('payroll_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id'), nullable=False),
        sa.Column('detail_id', sa.Integer(), sa.ForeignKey('employee_payroll_details.id', ondelete='CASCADE'),
                  nullable=False, unique=True),
        sa.Column('earnings', sa.JSON(), nullable=False),
        sa.Column('deductions', sa.JSON(), nullable=False),
        _money('total_gross_salary'),
        _money('total_deductions'),
        _money('net_pay'),
        sa.Column('payment_status', sa.Enum('pending', 'paid', 'failed', name='payslip_payment_status_enum'),
                  nullable=False, server_default='pending'),
        sa.Column('generated_at', sa.DateTime(), nullable=True),
        sa.Column('frozen_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('run_id', 'employee_id', name='uq_payslip_run_employee'),
    )
    op.create_index('ix_payslips_run_id', 'payslips', ['run_id'])
    op.create_index('ix_payslips_employee_id', 'payslips', ['employee_id'])

    op.create_table(
        'payroll_run_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_id', sa.Integer(), sa.ForeignKey('payroll_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.String(32), nullable=False),
        sa.Column('from_status', sa.String(16), nullable=True),
        sa.Column('to_status', sa.String(16), nullable=False),
        sa.Column('actor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('note', sa.String(255), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payroll_run_history_run_id', 'payroll_run_history', ['run_id'])

    op.create_table(
        'payroll_exceptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_id', sa.Integer(), sa.ForeignKey('payroll_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id'), nullable=False),
        sa.Column('detail_id', sa.Integer(), sa.ForeignKey('employee_payroll_details.id', ondelete='CASCADE'),
                  nullable=True),
        sa.Column('type', sa.Enum('MISSING_BANK_DETAILS', 'INVALID_BANK_DETAILS', 'NEGATIVE_NET_PAY',
                                  'EXCESSIVE_PENALTIES', 'ZERO_BASE_SALARY', 'CALCULATION_ERROR',
                                  name='payroll_exception_type_enum'), nullable=False),
        sa.Column('severity', sa.Enum('LOW', 'MEDIUM', 'HIGH', 'CRITICAL',
                                      name='payroll_exception_severity_enum'), nullable=False),
        sa.Column('message', sa.String(255), nullable=False),
        sa.Column('status', sa.Enum('open', 'in_progress', 'resolved', name='payroll_exception_status_enum'),
                  nullable=False, server_default='open'),
        sa.Column('flagged_at', sa.DateTime(), nullable=False),
        sa.Column('review_note', sa.String(500), nullable=True),
        sa.Column('reviewed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('resolution_note', sa.String(500), nullable=True),
        sa.Column('resolved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payroll_exceptions_run_id', 'payroll_exceptions', ['run_id'])
    op.create_index('ix_payroll_exceptions_employee_id', 'payroll_exceptions', ['employee_id'])
    op.create_index('ix_payroll_exc_run_emp_status', 'payroll_exceptions', ['run_id', 'employee_id', 'status'])

    op.create_table(
        'run_adjustments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_id', sa.Integer(), sa.ForeignKey('payroll_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id'), nullable=False),
        sa.Column('kind', sa.Enum('bonus', 'deduction', 'benefit', name='run_adjustment_kind_enum'), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('reason', sa.String(255), nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_run_adjustments_run_id', 'run_adjustments', ['run_id'])
    op.create_index('ix_run_adjustments_employee_id', 'run_adjustments', ['employee_id'])

    # ---- employee-owned payroll inputs ----
    op.create_table(
        'compensation_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kind', sa.Enum('SIGNING_BONUS', 'TERMINATION_BENEFIT', 'RESIGNATION_BENEFIT',
                                  name='compensation_kind_enum'), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('status', sa.Enum('pending', 'approved', 'rejected', name='compensation_status_enum'),
                  nullable=False, server_default='pending'),
        sa.Column('scheduled_payment_date', sa.Date(), nullable=True),
        sa.Column('source_ref', sa.String(120), nullable=True),
        sa.Column('paid_run_id', sa.Integer(), sa.ForeignKey('payroll_runs.id'), nullable=True),
        sa.Column('decided_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('decided_at', sa.DateTime(), nullable=True),
        sa.Column('decision_note', sa.String(255), nullable=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_compensation_items_employee_id', 'compensation_items', ['employee_id'])
    op.create_index('ix_comp_item_emp_status', 'compensation_items', ['employee_id', 'status'])

    op.create_table(
        'employee_penalties',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='CASCADE'),
                  nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'penalty_lines',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('penalty_id', sa.Integer(), sa.ForeignKey('employee_penalties.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('reason', sa.String(255), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('settled_run_id', sa.Integer(), sa.ForeignKey('payroll_runs.id'), nullable=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_penalty_lines_penalty_id', 'penalty_lines', ['penalty_id'])


def downgrade() -> None:
    for table in (
        'penalty_lines', 'employee_penalties', 'compensation_items', 'run_adjustments',
        'payroll_exceptions', 'payroll_run_history', 'payslips', 'employee_payroll_details',
        'payroll_runs', 'allowance_definitions', 'tax_rules', 'employee_bank_accounts',
        'employee_attendance', 'employees', 'designations', 'departments', 'companies',
        'role_permissions', 'user_roles', 'permissions', 'roles', 'users',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_name in (
        'compensation_kind_enum', 'compensation_status_enum', 'run_adjustment_kind_enum',
        'payroll_exception_type_enum', 'payroll_exception_severity_enum', 'payroll_exception_status_enum',
        'payslip_payment_status_enum', 'payroll_bank_status_enum', 'payroll_run_payment_enum',
        'payroll_run_status_enum', 'allowance_status_enum', 'tax_rule_status_enum', 'employee_hr_event_enum',
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
