# db.py
"""
Persistence for sessions, linked accounts and transfer records.

Pending-transaction transitions are compare-and-set against the session's
version column, so two turns racing on the same session cannot both
create, clear or claim the same PendingTransaction.
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import (
    Boolean, Column, Integer, JSON, MetaData, NUMERIC, String, Table, TIMESTAMP,
    create_engine, func, select, text,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from transfer_orchestrator.errors import CorruptStateError
from transfer_orchestrator.schemas import (
    ChatMessage, LinkedAccount, MandateStatus, PendingTransaction, Session,
)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

class OrchestratorDb:
    """Database operations for the transfer orchestrator"""

    def __init__(self, uri: str, logger: logging.Logger = None, clock: Callable[[], datetime] = utcnow):
        if uri.startswith("sqlite"):
            self.engine = create_engine(uri, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        else:
            self.engine = create_engine(uri, pool_pre_ping=True, pool_size=10, max_overflow=20)
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.metadata = MetaData()

        self._define_tables()

        try:
            self.metadata.create_all(self.engine)
            self.logger.info("Database tables created/verified successfully")
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to create database tables: {str(e)}")
            raise

    def _define_tables(self):
        """Define all database tables"""

        # One row per user; version only moves on pending-transaction transitions
        self.sessions_table = Table(
            "chat_sessions", self.metadata,
            Column("user_id", String(64), primary_key=True),
            Column("phone_number", String(32)),
            Column("history", JSON, nullable=False, default=list),
            Column("pending_transaction", JSON, nullable=True),
            Column("version", Integer, nullable=False, default=0),
            Column("created_at", TIMESTAMP(timezone=True), nullable=False),
            Column("last_activity", TIMESTAMP(timezone=True), nullable=False),
        )

        self.linked_accounts_table = Table(
            "linked_accounts", self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("user_id", String(64), nullable=False, index=True),
            Column("provider_account_id", String(64), nullable=False),
            Column("provider_customer_id", String(64)),
            Column("account_number", String(10)),
            Column("account_name", String(255)),
            Column("bank_name", String(255)),
            Column("bank_code", String(10)),
            Column("phone_number", String(32)),
            Column("is_active", Boolean, nullable=False, default=True),
            Column("is_primary", Boolean, nullable=False, default=False),
            Column("mandate_status", String(16), nullable=False, default=MandateStatus.ABSENT.value),
            Column("mandate_id", String(64), index=True),
            Column("mandate_reference", String(64), index=True),
            Column("mandate_url", String(512)),
            Column("created_at", TIMESTAMP(timezone=True), nullable=False),
            Column("updated_at", TIMESTAMP(timezone=True), nullable=False),
        )

        self.transfer_records_table = Table(
            "transfer_records", self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("user_id", String(64), nullable=False, index=True),
            Column("amount", NUMERIC(precision=18, scale=2), nullable=False),
            Column("amount_minor", Integer, nullable=False),
            Column("recipient_account_number", String(10), nullable=False),
            Column("recipient_bank_code", String(10), nullable=False),
            Column("recipient_name", String(255)),
            Column("reference", String(64), nullable=False, unique=True),
            Column("status", String(16), nullable=False),
            Column("provider_status", String(32)),
            Column("created_at", TIMESTAMP(timezone=True), nullable=False),
        )

    # === Sessions ===

    def _row_to_session(self, row) -> Session:
        try:
            history = [ChatMessage.model_validate(item) for item in (row.history or [])]
            pending = (
                PendingTransaction.model_validate(row.pending_transaction)
                if row.pending_transaction else None
            )
        except (ValidationError, TypeError) as e:
            raise CorruptStateError(row.user_id, str(e)) from e
        return Session(
            user_id=row.user_id,
            phone_number=row.phone_number,
            history=history,
            pending_transaction=pending,
            version=row.version,
            last_activity=_aware(row.last_activity),
        )

    def get_or_create_session(self, user_id: str, phone_number: Optional[str] = None,
                              ttl_seconds: Optional[int] = None) -> Session:
        """
        Reads the session for a user, creating it on first contact.

        A session idle for longer than ttl_seconds comes back empty but keeps
        its version, so later compare-and-set calls still line up with the row.
        """
        now = self.clock()
        query = self.sessions_table.select().where(self.sessions_table.c.user_id == user_id)
        with self.engine.connect() as conn:
            row = conn.execute(query).first()

        if row is None:
            try:
                with self.engine.begin() as conn:
                    conn.execute(self.sessions_table.insert().values(
                        user_id=user_id, phone_number=phone_number, history=[],
                        pending_transaction=None, version=0, created_at=now, last_activity=now,
                    ))
                self.logger.info(f"Created session for user {user_id}")
                return Session(user_id=user_id, phone_number=phone_number, version=0, last_activity=now)
            except IntegrityError:
                with self.engine.connect() as conn:
                    row = conn.execute(query).first()

        session = self._row_to_session(row)
        if phone_number and not session.phone_number:
            session.phone_number = phone_number

        if ttl_seconds is not None and session.last_activity is not None:
            if now - session.last_activity > timedelta(seconds=ttl_seconds):
                self.logger.info(f"Session for user {user_id} expired after inactivity; starting fresh")
                session.history = []
                session.pending_transaction = None
                if not self.compare_and_set_pending(session, None):
                    return self.get_or_create_session(user_id, phone_number)
        return session

    def compare_and_set_pending(self, session: Session, pending: Optional[PendingTransaction]) -> bool:
        """
        Atomically replaces the pending transaction if nobody else moved the session first.

        On success the session's version and pending_transaction are updated in place.
        """
        table = self.sessions_table
        payload = pending.model_dump(mode="json") if pending else None
        statement = (
            table.update()
            .where(table.c.user_id == session.user_id, table.c.version == session.version)
            .values(pending_transaction=payload, version=table.c.version + 1, last_activity=self.clock())
        )
        with self.engine.begin() as conn:
            result = conn.execute(statement)
        if result.rowcount != 1:
            self.logger.warning(
                f"Pending transaction update for user {session.user_id} lost a race at version {session.version}"
            )
            return False
        session.version += 1
        session.pending_transaction = pending
        return True

    def reset_session(self, user_id: str) -> bool:
        """Drops history and any pending transaction unconditionally, bumping the version."""
        table = self.sessions_table
        with self.engine.begin() as conn:
            result = conn.execute(
                table.update().where(table.c.user_id == user_id).values(
                    history=[], pending_transaction=None, version=table.c.version + 1, last_activity=self.clock(),
                )
            )
        self.logger.warning(f"Session for user {user_id} was reset")
        return result.rowcount == 1

    def save_history(self, session: Session, max_messages: int) -> bool:
        """Persists the bounded conversation history; never touches the pending transaction."""
        session.history = session.history[-max_messages:] if max_messages > 0 else []
        table = self.sessions_table
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    table.update().where(table.c.user_id == session.user_id).values(
                        history=[message.model_dump() for message in session.history],
                        phone_number=session.phone_number,
                        last_activity=self.clock(),
                    )
                )
            return True
        except SQLAlchemyError as e:
            self.logger.error(f"Database error saving history for {session.user_id}: {str(e)}")
            return False

    def cleanup_expired_sessions(self, ttl_seconds: int) -> int:
        cutoff = self.clock() - timedelta(seconds=ttl_seconds)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    self.sessions_table.delete().where(self.sessions_table.c.last_activity < cutoff)
                )
            deleted_count = result.rowcount
            self.logger.info(f"Cleaned up {deleted_count} expired sessions")
            return deleted_count
        except SQLAlchemyError as e:
            self.logger.error(f"Database error during cleanup: {str(e)}")
            return 0

    # === Linked accounts ===

    @staticmethod
    def _row_to_account(row) -> LinkedAccount:
        return LinkedAccount(
            id=row.id,
            user_id=row.user_id,
            provider_account_id=row.provider_account_id,
            provider_customer_id=row.provider_customer_id,
            account_number=row.account_number,
            account_name=row.account_name,
            bank_name=row.bank_name,
            bank_code=row.bank_code,
            phone_number=row.phone_number,
            is_primary=row.is_primary,
            mandate_status=MandateStatus(row.mandate_status),
            mandate_id=row.mandate_id,
            mandate_reference=row.mandate_reference,
            mandate_url=row.mandate_url,
        )

    def add_linked_account(self, account: LinkedAccount) -> LinkedAccount:
        now = self.clock()
        values = account.model_dump(exclude={"id"})
        values["mandate_status"] = account.mandate_status.value
        with self.engine.begin() as conn:
            result = conn.execute(self.linked_accounts_table.insert().values(
                **values, is_active=True, created_at=now, updated_at=now,
            ))
            account_id = result.inserted_primary_key[0]
        self.logger.info(f"Linked account {account_id} for user {account.user_id}")
        return account.model_copy(update={"id": account_id})

    def list_accounts(self, user_id: str) -> List[LinkedAccount]:
        table = self.linked_accounts_table
        query = (
            table.select()
            .where(table.c.user_id == user_id, table.c.is_active.is_(True))
            .order_by(table.c.is_primary.desc(), table.c.created_at.desc(), table.c.id.desc())
        )
        with self.engine.connect() as conn:
            return [self._row_to_account(row) for row in conn.execute(query)]

    def get_active_account(self, user_id: str) -> Optional[LinkedAccount]:
        """Primary account first, otherwise the most recently linked one."""
        accounts = self.list_accounts(user_id)
        return accounts[0] if accounts else None

    def update_mandate(self, account_id: int, status: MandateStatus, mandate_id: Optional[str] = None,
                       reference: Optional[str] = None, authorization_url: Optional[str] = None) -> bool:
        values: Dict[str, Any] = {"mandate_status": status.value, "updated_at": self.clock()}
        if mandate_id is not None:
            values["mandate_id"] = mandate_id
        if reference is not None:
            values["mandate_reference"] = reference
        if status == MandateStatus.PENDING:
            values["mandate_url"] = authorization_url
        else:
            values["mandate_url"] = None
        table = self.linked_accounts_table
        with self.engine.begin() as conn:
            result = conn.execute(table.update().where(table.c.id == account_id).values(**values))
        self.logger.info(f"Mandate for account {account_id} is now {status.value}")
        return result.rowcount == 1

    def find_account_by_mandate(self, reference: Optional[str] = None,
                                mandate_id: Optional[str] = None) -> Optional[LinkedAccount]:
        table = self.linked_accounts_table
        conditions = []
        if reference:
            conditions.append(table.c.mandate_reference == reference)
        if mandate_id:
            conditions.append(table.c.mandate_id == mandate_id)
        if not conditions:
            return None
        for condition in conditions:
            with self.engine.connect() as conn:
                row = conn.execute(table.select().where(condition)).first()
            if row:
                return self._row_to_account(row)
        return None

    # === Transfers ===

    def record_transfer(self, user_id: str, amount: Decimal, amount_minor: int, recipient_account_number: str,
                        recipient_bank_code: str, recipient_name: Optional[str], reference: str, status: str,
                        provider_status: Optional[str] = None) -> bool:
        try:
            with self.engine.begin() as conn:
                conn.execute(self.transfer_records_table.insert().values(
                    user_id=user_id,
                    amount=amount,
                    amount_minor=amount_minor,
                    recipient_account_number=recipient_account_number,
                    recipient_bank_code=recipient_bank_code,
                    recipient_name=recipient_name,
                    reference=reference,
                    status=status,
                    provider_status=provider_status,
                    created_at=self.clock(),
                ))
            return True
        except SQLAlchemyError as e:
            self.logger.error(f"Database error recording transfer {reference}: {str(e)}")
            return False

    def list_transfers(self, user_id: str) -> List[Dict[str, Any]]:
        table = self.transfer_records_table
        query = table.select().where(table.c.user_id == user_id).order_by(table.c.id)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    # === Health and Monitoring ===

    def health_check(self) -> Dict[str, Any]:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                session_count = conn.execute(select(func.count()).select_from(self.sessions_table)).scalar()
                account_count = conn.execute(select(func.count()).select_from(self.linked_accounts_table)).scalar()
            return {
                "status": "healthy",
                "database_connection": "ok",
                "total_sessions": session_count,
                "linked_accounts": account_count,
                "timestamp": utcnow().isoformat(),
            }
        except SQLAlchemyError as e:
            self.logger.error(f"Database health check failed: {str(e)}")
            return {
                "status": "unhealthy",
                "error": str(e),
                "timestamp": utcnow().isoformat(),
            }
