from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), 'sqlite')


class Base(DeclarativeBase):
    pass


class TaskKind(str, Enum):
    STOCK = 'STOCK'
    MOVEMENT_INBOUND = 'MOVEMENT_INBOUND'
    MOVEMENT_OUTBOUND = 'MOVEMENT_OUTBOUND'
    STOCK_RULES = 'STOCK_RULES'


class TriggerMode(str, Enum):
    SCHEDULED = 'SCHEDULED'
    MANUAL = 'MANUAL'


class ExecutionState(str, Enum):
    PENDING = 'PENDING'
    RUNNING = 'RUNNING'
    COMPLETED = 'COMPLETED'
    ERROR = 'ERROR'


class TokenSource(str, Enum):
    CACHE = 'CACHE'
    REFRESH = 'REFRESH'
    FRESH = 'FRESH'
    SIMULATED = 'SIMULATED'


class StockSnapshotRecord(Base):
    __tablename__ = 'stock_snapshots'
    __table_args__ = (
        Index('ix_stock_snapshots_cutoff_code', 'cutoff_date', 'internal_code'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    cutoff_date: Mapped[date] = mapped_column(Date, nullable=False)
    location: Mapped[str | None] = mapped_column(Text)
    internal_code: Mapped[str | None] = mapped_column(Text)
    generic_code: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    stock_min: Mapped[int | None] = mapped_column(Integer)
    stock_max: Mapped[int | None] = mapped_column(Integer)
    loaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MovementRecord(Base):
    __tablename__ = 'inventory_movements'
    __table_args__ = (
        Index('ix_inventory_movements_date', 'movement_date'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    movement_date: Mapped[date] = mapped_column(Date, nullable=False)
    location: Mapped[str | None] = mapped_column(Text)
    document_type: Mapped[str | None] = mapped_column(Text)
    document_number: Mapped[str | None] = mapped_column(Text)
    counterparty_id: Mapped[str | None] = mapped_column(Text)
    counterparty_name: Mapped[str | None] = mapped_column(Text)
    internal_code: Mapped[str | None] = mapped_column(Text)
    generic_code: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    lot_number: Mapped[str | None] = mapped_column(Text)
    expiry_date: Mapped[date | None] = mapped_column(Date)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    loaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SubmissionTask(Base):
    __tablename__ = 'submission_tasks'
    __table_args__ = (
        CheckConstraint("purchase_channel IN ('C', 'M')", name='submission_tasks_purchase_channel_check'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[TaskKind] = mapped_column(SQLEnum(TaskKind, name='task_kind'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    run_time: Mapped[str] = mapped_column(String(5), nullable=False)
    weekdays: Mapped[str] = mapped_column(String(20), nullable=False, default='1,2,3,4,5', server_default='1,2,3,4,5')
    relation_id: Mapped[int | None] = mapped_column(Integer)
    purchase_channel: Mapped[str | None] = mapped_column(String(1))
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class ExecutionLog(Base):
    __tablename__ = 'execution_logs'
    __table_args__ = (
        Index('ix_execution_logs_started_at', 'started_at'),
        Index('ix_execution_logs_kind', 'kind'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    task_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('submission_tasks.id', ondelete='SET NULL'))
    kind: Mapped[TaskKind] = mapped_column(SQLEnum(TaskKind, name='task_kind'), nullable=False)
    trigger: Mapped[TriggerMode] = mapped_column(SQLEnum(TriggerMode, name='trigger_mode'), nullable=False)
    state: Mapped[ExecutionState] = mapped_column(
        SQLEnum(ExecutionState, name='execution_state'), nullable=False, default=ExecutionState.PENDING
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    items_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    message: Mapped[str | None] = mapped_column(Text)
    error_category: Mapped[str | None] = mapped_column(String(40))
    recoverable: Mapped[bool | None] = mapped_column(Boolean)
    effective_date: Mapped[date | None] = mapped_column(Date)
    response_detail: Mapped[dict | None] = mapped_column(JSON)
    triggered_by: Mapped[str] = mapped_column(Text, nullable=False, default='system', server_default='system')


class CachedToken(Base):
    __tablename__ = 'broker_tokens'
    __table_args__ = (
        CheckConstraint('id = 1', name='broker_tokens_single_row_check'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[TokenSource] = mapped_column(SQLEnum(TokenSource, name='token_source'), nullable=False)


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor: Mapped[str] = mapped_column(Text, nullable=False, default='system', server_default='system')
    action: Mapped[str] = mapped_column(Text, nullable=False)
    ip: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
