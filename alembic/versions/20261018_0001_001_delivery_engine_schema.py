"""Delivery engine schema - lanes, jobs, webhook registrations, notifications and attempts.

Revision ID: 001
Revises: None
Create Date: 2026-10-18

This migration creates:
- queue_lanes and jobs for the durable job store
- webhook_registrations for outbound webhook fan-out
- recipients, notification_templates, notification_preferences and notifications
- delivery_attempts, the append-only delivery audit trail
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Enum types store member names, matching SQLModel's Enum columns
    op.execute("CREATE TYPE jobstatus AS ENUM ('WAITING', 'ACTIVE', 'DELAYED', 'COMPLETED', 'FAILED')")
    op.execute("CREATE TYPE attemptoutcome AS ENUM ('SUCCESS', 'FAILURE')")
    op.execute("CREATE TYPE notificationpriority AS ENUM ('HIGH', 'NORMAL', 'LOW')")
    op.execute("CREATE TYPE notificationstatus AS ENUM ('PENDING', 'SENT', 'FAILED')")

    op.execute("""
        CREATE TABLE IF NOT EXISTS queue_lanes (
            name VARCHAR(100) PRIMARY KEY,
            concurrency INTEGER NOT NULL DEFAULT 5,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            base_delay_ms INTEGER NOT NULL DEFAULT 1000,
            timeout_ms INTEGER NOT NULL DEFAULT 30000,
            paused BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id UUID PRIMARY KEY,
            lane VARCHAR(100) NOT NULL REFERENCES queue_lanes(name),
            payload JSONB,
            priority INTEGER NOT NULL DEFAULT 2,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            base_delay_ms INTEGER NOT NULL DEFAULT 1000,
            status jobstatus NOT NULL DEFAULT 'WAITING',
            scheduled_at TIMESTAMP NOT NULL DEFAULT NOW(),
            timeout_ms INTEGER NOT NULL DEFAULT 30000,
            locked_by VARCHAR(255),
            lease_expires_at TIMESTAMP,
            last_error VARCHAR(1000),
            retry_of UUID,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
            started_at TIMESTAMP,
            finished_at TIMESTAMP
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_jobs_lane ON jobs(lane)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_jobs_priority ON jobs(priority)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_jobs_status ON jobs(status)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_jobs_scheduled_at ON jobs(scheduled_at)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_jobs_lease_expires_at ON jobs(lease_expires_at)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_jobs_retry_of ON jobs(retry_of)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_jobs_finished_at ON jobs(finished_at)")
    # Claim scan: waiting jobs of a lane in priority order
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_jobs_claim
        ON jobs(lane, priority, scheduled_at, created_at)
        WHERE status = 'WAITING'
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS webhook_registrations (
            id UUID PRIMARY KEY,
            endpoint VARCHAR(2048) NOT NULL,
            events JSONB,
            secret VARCHAR(255) NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            retry_policy JSONB,
            headers JSONB,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_webhook_registrations_is_active ON webhook_registrations(is_active)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS recipients (
            id UUID PRIMARY KEY,
            email VARCHAR(255),
            phone VARCHAR(32),
            push_tokens JSONB,
            web_push_subscriptions JSONB,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_recipients_email ON recipients(email)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_recipients_is_active ON recipients(is_active)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS notification_templates (
            id UUID PRIMARY KEY,
            name VARCHAR(100) NOT NULL UNIQUE,
            event VARCHAR(100),
            title VARCHAR(200),
            body VARCHAR NOT NULL,
            channels JSONB,
            variables JSONB,
            data JSONB,
            version INTEGER NOT NULL DEFAULT 1,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_notification_templates_event ON notification_templates(event)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS notification_preferences (
            user_id UUID PRIMARY KEY REFERENCES recipients(id) ON DELETE CASCADE,
            channels JSONB,
            quiet_hours_start VARCHAR(5),
            quiet_hours_end VARCHAR(5),
            quiet_hours_timezone VARCHAR(64),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id UUID PRIMARY KEY,
            user_id UUID NOT NULL REFERENCES recipients(id) ON DELETE CASCADE,
            template VARCHAR(100) NOT NULL,
            event VARCHAR(100) NOT NULL,
            title VARCHAR(200) NOT NULL DEFAULT '',
            body VARCHAR NOT NULL,
            data JSONB,
            channels JSONB,
            priority notificationpriority NOT NULL DEFAULT 'NORMAL',
            status notificationstatus NOT NULL DEFAULT 'PENDING',
            error VARCHAR(500),
            in_app_at TIMESTAMP,
            read_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_notifications_user_id ON notifications(user_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_notifications_event ON notifications(event)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_notifications_status ON notifications(status)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_notifications_read_at ON notifications(read_at)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_notifications_created_at ON notifications(created_at)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS delivery_attempts (
            id UUID PRIMARY KEY,
            job_id UUID NOT NULL,
            channel VARCHAR(32) NOT NULL,
            attempt_number INTEGER NOT NULL,
            outcome attemptoutcome NOT NULL,
            http_status INTEGER,
            error_detail VARCHAR(500),
            event VARCHAR(100),
            registration_id UUID,
            notification_id UUID,
            timestamp TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_delivery_attempts_job_id ON delivery_attempts(job_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_delivery_attempts_channel ON delivery_attempts(channel)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_delivery_attempts_outcome ON delivery_attempts(outcome)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_delivery_attempts_event ON delivery_attempts(event)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_delivery_attempts_registration_id ON delivery_attempts(registration_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_delivery_attempts_notification_id ON delivery_attempts(notification_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_delivery_attempts_timestamp ON delivery_attempts(timestamp)")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS delivery_attempts CASCADE")
    op.execute("DROP TABLE IF EXISTS notifications CASCADE")
    op.execute("DROP TABLE IF EXISTS notification_preferences CASCADE")
    op.execute("DROP TABLE IF EXISTS notification_templates CASCADE")
    op.execute("DROP TABLE IF EXISTS recipients CASCADE")
    op.execute("DROP TABLE IF EXISTS webhook_registrations CASCADE")
    op.execute("DROP TABLE IF EXISTS jobs CASCADE")
    op.execute("DROP TABLE IF EXISTS queue_lanes CASCADE")

    op.execute("DROP TYPE IF EXISTS notificationstatus")
    op.execute("DROP TYPE IF EXISTS notificationpriority")
    op.execute("DROP TYPE IF EXISTS attemptoutcome")
    op.execute("DROP TYPE IF EXISTS jobstatus")
