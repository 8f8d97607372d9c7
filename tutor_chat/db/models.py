"""
Database models for tutor chat usage accounting.

SCHEMA OVERVIEW
===============================================================================

TABLE: usage_records - Chat usage per tenant per day
-------------------------------------------------------------------------------
usage_record_id   SERIAL        PRIMARY KEY
tenant_id         VARCHAR       NOT NULL           Creator/tenant owning the course
usage_date        DATE          NOT NULL           UTC calendar day
message_count     INTEGER       DEFAULT 0          Completions billed that day
input_tokens      BIGINT        DEFAULT 0
output_tokens     BIGINT        DEFAULT 0
cost_usd          FLOAT         DEFAULT 0          Sum of ModelRegistry.cost per completion
last_model_id     VARCHAR                          Model of the most recent completion
updated_at        TIMESTAMP     DEFAULT NOW()

UNIQUE: (tenant_id, usage_date)
INDEX:  idx_usage_records_date ON usage_date

Rows are only ever incremented (INSERT ... ON CONFLICT DO UPDATE), so cost_usd
never decreases within a day. Rows are removed only by an explicit reset.
===============================================================================
"""
from sqlalchemy import BigInteger, Column, Date, DateTime, Float, Index, Integer, String, UniqueConstraint, func

from .database import Base


class UsageRecord(Base):
    __tablename__ = "usage_records"

    usage_record_id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False)
    usage_date = Column(Date, nullable=False)
    message_count = Column(Integer, nullable=False, default=0)
    input_tokens = Column(BigInteger().with_variant(Integer, "sqlite"), nullable=False, default=0)
    output_tokens = Column(BigInteger().with_variant(Integer, "sqlite"), nullable=False, default=0)
    cost_usd = Column(Float, nullable=False, default=0.0)
    last_model_id = Column(String)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "usage_date", name="uq_usage_records_tenant_date"),
        Index("idx_usage_records_date", "usage_date"),
    )

    def __repr__(self):
        return (
            f"<UsageRecord(tenant_id='{self.tenant_id}', date={self.usage_date}, "
            f"messages={self.message_count}, cost=${self.cost_usd:.4f})>"
        )
