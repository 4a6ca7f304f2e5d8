"""001 – Leave engine schema: configuration, balances, ledger, requests, workflows.

Revision ID: 001_leave_engine_schema
Revises:
Create Date: 2026-10-19 10:00:00.000000+05:30
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# Revision identifiers
revision = "001_leave_engine_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Enumerations are stored as VARCHAR with CHECK constraints so new members
# only need a constraint swap, not an ALTER TYPE.
ENUM_VALUES: dict[str, list[str]] = {
    "grant_leaves": ["in_advance", "after_earning"],
    "grant_frequency": ["per_year", "per_quarter", "per_month"],
    "pro_rata_calculation": ["full_month", "slab_system", "rounding_off"],
    "assignment_type": ["leave_variant", "pto_variant", "comp_off_variant"],
    "request_status": [
        "pending", "approved", "rejected", "withdrawn",
        "withdrawal_pending", "withdrawal_approved",
    ],
    "workflow_status": ["in_progress", "completed"],
    "transaction_type": [
        "grant", "deduction", "pending_deduction", "balance_restoration",
        "carry_forward", "adjustment", "credit", "debit",
    ],
    "transaction_subtype": [
        "opening_import", "initial_grant", "configured_entitlement",
        "recalculation", "approval_deduction", "submission_deduction",
        "rejection_restoration", "withdrawal_credit", "pending_request",
        "pro_rata_correction", "lapsed", "encashed", "manual",
    ],
}

REQUEST_TABLES = ["leave_requests", "pto_requests", "comp_off_requests"]


def _check(column: str, enum_name: str) -> str:
    vals = ", ".join(f"'{v}'" for v in ENUM_VALUES[enum_name])
    return f"CHECK ({column} IN ({vals}))"


def _workflow_columns() -> str:
    return f"""
            status                     VARCHAR(40) NOT NULL DEFAULT 'pending'
                                       {_check("status", "request_status")},
            workflow_id                UUID REFERENCES workflows(id),
            workflow_steps             JSONB,
            current_step               INTEGER,
            workflow_status            VARCHAR(40)
                                       {_check("workflow_status", "workflow_status")},
            approval_history           JSONB NOT NULL DEFAULT '[]'::jsonb,
            scheduled_auto_approval_at TIMESTAMPTZ,
            approved_by                VARCHAR(100),
            approved_at                TIMESTAMPTZ,
            rejected_reason            TEXT,
            created_at                 TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at                 TIMESTAMPTZ NOT NULL DEFAULT NOW()"""


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ── 1. companies ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE companies (
            id              UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            org_id          INTEGER NOT NULL UNIQUE,
            name            VARCHAR(200) NOT NULL,
            effective_date  DATE,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # ── 2. employee_profiles ──────────────────────────────────────────────
    op.execute("""
        CREATE TABLE employee_profiles (
            id               UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            user_id          VARCHAR(100) NOT NULL,
            org_id           INTEGER NOT NULL,
            user_name        VARCHAR(200),
            employee_number  VARCHAR(50),
            date_of_joining  DATE,
            created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_employee_profile_user_org UNIQUE (user_id, org_id)
        )
    """)

    # ── 3. leave_types ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_types (
            id           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            org_id       INTEGER NOT NULL,
            name         VARCHAR(100) NOT NULL,
            description  TEXT,
            is_active    BOOLEAN NOT NULL DEFAULT TRUE,
            created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.create_index("ix_leave_types_org_id", "leave_types", ["org_id"])

    # ── 4. leave_variants ─────────────────────────────────────────────────
    op.execute(f"""
        CREATE TABLE leave_variants (
            id                                   UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            org_id                               INTEGER NOT NULL,
            leave_type_id                        UUID NOT NULL REFERENCES leave_types(id),
            leave_type_name                      VARCHAR(100) NOT NULL,
            leave_variant_name                   VARCHAR(100) NOT NULL,
            paid_days_in_year                    NUMERIC(10,2) NOT NULL DEFAULT 0,
            grant_leaves                         VARCHAR(40) NOT NULL DEFAULT 'after_earning'
                                                 {_check("grant_leaves", "grant_leaves")},
            grant_frequency                      VARCHAR(40) NOT NULL DEFAULT 'per_month'
                                                 {_check("grant_frequency", "grant_frequency")},
            pro_rata_calculation                 VARCHAR(40) NOT NULL DEFAULT 'full_month'
                                                 {_check("pro_rata_calculation", "pro_rata_calculation")},
            onboarding_slabs                     JSONB NOT NULL DEFAULT '[]'::jsonb,
            leave_balance_deduction_before       BOOLEAN NOT NULL DEFAULT FALSE,
            leave_balance_deduction_after        BOOLEAN NOT NULL DEFAULT TRUE,
            leave_balance_deduction_not_allowed  BOOLEAN NOT NULL DEFAULT FALSE,
            allow_withdrawal_before_approval     BOOLEAN NOT NULL DEFAULT TRUE,
            allow_withdrawal_after_approval      BOOLEAN NOT NULL DEFAULT TRUE,
            negative_leave_balance               NUMERIC(10,2) NOT NULL DEFAULT 0,
            carry_forward_limit                  NUMERIC(10,2) NOT NULL DEFAULT 0,
            created_at                           TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at                           TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.create_index("ix_leave_variants_org_id", "leave_variants", ["org_id"])

    # ── 5. employee_assignments ───────────────────────────────────────────
    op.execute(f"""
        CREATE TABLE employee_assignments (
            id                UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            org_id            INTEGER NOT NULL,
            user_id           VARCHAR(100) NOT NULL,
            leave_variant_id  UUID NOT NULL,
            assignment_type   VARCHAR(40) NOT NULL DEFAULT 'leave_variant'
                              {_check("assignment_type", "assignment_type")},
            created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_employee_assignment
                UNIQUE (user_id, leave_variant_id, assignment_type, org_id)
        )
    """)
    op.create_index("ix_employee_assignments_org_id", "employee_assignments", ["org_id"])

    # ── 6. employee_leave_balances ────────────────────────────────────────
    op.execute("""
        CREATE TABLE employee_leave_balances (
            id                 UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            org_id             INTEGER NOT NULL,
            user_id            VARCHAR(100) NOT NULL,
            leave_variant_id   UUID NOT NULL REFERENCES leave_variants(id),
            year               INTEGER NOT NULL,
            total_entitlement  NUMERIC(10,2) NOT NULL DEFAULT 0,
            current_balance    NUMERIC(10,2) NOT NULL DEFAULT 0,
            used_balance       NUMERIC(10,2) NOT NULL DEFAULT 0,
            carry_forward      NUMERIC(10,2) NOT NULL DEFAULT 0,
            created_at         TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at         TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_employee_leave_balance
                UNIQUE (user_id, leave_variant_id, year, org_id)
        )
    """)

    # ── 7. leave_balance_transactions (append-only ledger) ────────────────
    op.execute(f"""
        CREATE TABLE leave_balance_transactions (
            id                   UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            org_id               INTEGER NOT NULL,
            user_id              VARCHAR(100) NOT NULL,
            leave_variant_id     UUID NOT NULL REFERENCES leave_variants(id),
            transaction_type     VARCHAR(40) NOT NULL
                                 {_check("transaction_type", "transaction_type")},
            transaction_subtype  VARCHAR(40)
                                 {_check("transaction_subtype", "transaction_subtype")},
            amount               NUMERIC(10,2) NOT NULL,
            balance_after        NUMERIC(10,2),
            description          TEXT,
            leave_request_id     UUID,
            year                 INTEGER NOT NULL,
            transaction_date     DATE NOT NULL DEFAULT CURRENT_DATE,
            created_at           TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.create_index(
        "ix_leave_txn_user_variant_year",
        "leave_balance_transactions",
        ["user_id", "leave_variant_id", "year", "org_id"],
    )
    op.create_index("ix_leave_txn_request", "leave_balance_transactions", ["leave_request_id"])

    # ── 8. workflows ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE workflows (
            id             UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            org_id         INTEGER NOT NULL,
            name           VARCHAR(200) NOT NULL,
            process        VARCHAR(50) NOT NULL,
            sub_processes  JSONB NOT NULL DEFAULT '[]'::jsonb,
            steps          JSONB NOT NULL DEFAULT '[]'::jsonb,
            is_active      BOOLEAN NOT NULL DEFAULT TRUE,
            created_at     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at     TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.create_index("ix_workflows_org_id", "workflows", ["org_id"])

    # ── 9. request tables ─────────────────────────────────────────────────
    op.execute(f"""
        CREATE TABLE leave_requests (
            id             UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            org_id         INTEGER NOT NULL,
            user_id        VARCHAR(100) NOT NULL,
            leave_type_id  UUID NOT NULL REFERENCES leave_types(id),
            start_date     DATE NOT NULL,
            end_date       DATE NOT NULL,
            total_days     NUMERIC(10,2) NOT NULL,
            working_days   NUMERIC(10,2) NOT NULL,
            reason         TEXT,
            withdrawn_at   TIMESTAMPTZ,
            {_workflow_columns()},
            CHECK (end_date >= start_date)
        )
    """)
    op.create_index("ix_leave_requests_user", "leave_requests", ["user_id", "org_id"])

    op.execute(f"""
        CREATE TABLE pto_requests (
            id              UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            org_id          INTEGER NOT NULL,
            user_id         VARCHAR(100) NOT NULL,
            pto_variant_id  UUID,
            request_date    DATE NOT NULL,
            hours           NUMERIC(10,2) NOT NULL,
            reason          TEXT,
            {_workflow_columns()}
        )
    """)

    op.execute(f"""
        CREATE TABLE comp_off_requests (
            id         UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            org_id     INTEGER NOT NULL,
            user_id    VARCHAR(100) NOT NULL,
            work_date  DATE NOT NULL,
            days       NUMERIC(10,2) NOT NULL,
            reason     TEXT,
            {_workflow_columns()}
        )
    """)

    # The time-based sweep scans open requests by schedule
    for table in REQUEST_TABLES:
        index_prefix = table.replace("_requests", "")
        op.create_index(
            f"ix_{index_prefix}_requests_schedule",
            table,
            ["status", "scheduled_auto_approval_at"],
        )

    # ── 10. audit_trail ───────────────────────────────────────────────────
    op.create_table(
        "audit_trail",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column("org_id", sa.Integer, nullable=False),
        sa.Column("actor_id", sa.String(100)),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=False),
        sa.Column("old_values", JSONB),
        sa.Column("new_values", JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("NOW()")),
    )
    op.create_index("ix_audit_trail_org_id", "audit_trail", ["org_id"])
    op.create_index("ix_audit_trail_entity", "audit_trail", ["entity_type", "entity_id"])
    op.create_index("ix_audit_trail_action", "audit_trail", ["action"])


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    for table in (
        "audit_trail",
        "comp_off_requests",
        "pto_requests",
        "leave_requests",
        "workflows",
        "leave_balance_transactions",
        "employee_leave_balances",
        "employee_assignments",
        "leave_variants",
        "leave_types",
        "employee_profiles",
        "companies",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
