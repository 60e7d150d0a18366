from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_create_payment_leads'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'payment_leads',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email1', sa.String, nullable=False),
        sa.Column('email2', sa.String, nullable=True),
        sa.Column('quiz_id', sa.String, index=True, nullable=True),
        sa.Column('quiz_response_id', sa.String, nullable=True),
        sa.Column('plan_type', sa.String, nullable=True),
        sa.Column('paid', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('amount_in_cents', sa.Integer, nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('identity_user_id', sa.String, index=True, nullable=True),
        sa.Column('subscriber_id', sa.String, index=True, nullable=True),
        sa.Column('external_session_id', sa.String, unique=True, nullable=True),
        sa.Column('external_transaction_id', sa.String, nullable=True),
        sa.Column('subscription_status', sa.String, nullable=True),
        sa.Column('subscription_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('device_type', sa.String, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )


def downgrade():
    op.drop_table('payment_leads')
