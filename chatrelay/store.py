import functools
import logging
from datetime import date
from typing import List, Optional

from sqlalchemy import delete, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, col, create_engine, select

from chatrelay.errors import StoreUnavailable
from chatrelay.models import DEFAULT_TITLE, ChatMessage, ChatSession, DailyUsage, utcnow

logger = logging.getLogger(__name__)

# dialects with INSERT .. ON CONFLICT DO UPDATE .. RETURNING
_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def make_engine(database_url: Optional[str]):
    if not database_url:
        return None
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def create_tables(engine):
    SQLModel.metadata.create_all(engine)


def _guarded(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if self.engine is None:
            raise StoreUnavailable("database not configured")
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("Store operation %s failed: %s", method.__name__, exc)
            raise StoreUnavailable(f"database error during {method.__name__}") from exc

    return wrapper


class SessionStore:
    """CRUD over chat sessions, chat messages and the daily usage counter.

    Every method raises StoreUnavailable when the database is missing or
    unreachable. The store is synchronous; async callers run it in a thread.
    """

    def __init__(self, engine):
        self.engine = engine

    @property
    def available(self) -> bool:
        return self.engine is not None

    @_guarded
    def create_session(self, user_id: str) -> ChatSession:
        with Session(self.engine) as session:
            chat_session = ChatSession(user_id=user_id, title=DEFAULT_TITLE)
            session.add(chat_session)
            session.commit()
            session.refresh(chat_session)
            return chat_session

    @_guarded
    def get_session(self, session_id: int) -> Optional[ChatSession]:
        with Session(self.engine) as session:
            return session.exec(select(ChatSession).where(ChatSession.id == session_id)).first()

    @_guarded
    def get_sessions_for_user(self, user_id: str) -> List[ChatSession]:
        with Session(self.engine) as session:
            statement = (
                select(ChatSession)
                .where(ChatSession.user_id == user_id)
                .order_by(col(ChatSession.updated_at).desc(), col(ChatSession.id).desc())
            )
            return list(session.exec(statement).all())

    @_guarded
    def get_messages(self, session_id: int) -> List[ChatMessage]:
        with Session(self.engine) as session:
            statement = (
                select(ChatMessage)
                .where(ChatMessage.session_id == session_id)
                .order_by(col(ChatMessage.created_at), col(ChatMessage.id))
            )
            return list(session.exec(statement).all())

    @_guarded
    def get_recent_messages(self, session_id: int, limit: int) -> List[ChatMessage]:
        """Return at most ``limit`` most recent messages, oldest first."""
        with Session(self.engine) as session:
            statement = (
                select(ChatMessage)
                .where(ChatMessage.session_id == session_id)
                .order_by(col(ChatMessage.created_at).desc(), col(ChatMessage.id).desc())
                .limit(limit)
            )
            records = list(session.exec(statement).all())
        records.reverse()
        return records

    @_guarded
    def append_message(self, session_id: int, role: str, content: str, content_type: str = "text") -> None:
        with Session(self.engine) as session:
            record = ChatMessage(
                session_id=session_id,
                role=role,
                content=content,
                type=content_type,
                created_at=utcnow(),
            )
            session.add(record)
            session.commit()

    @_guarded
    def update_title(self, session_id: int, title: str) -> bool:
        """Replace the default title. Returns False if the title was already set."""
        statement = (
            update(ChatSession)
            .where(col(ChatSession.id) == session_id, col(ChatSession.title) == DEFAULT_TITLE)
            .values(title=title)
        )
        with self.engine.begin() as conn:
            updated = conn.execute(statement).rowcount
        return updated > 0

    @_guarded
    def touch_updated_at(self, session_id: int) -> None:
        statement = update(ChatSession).where(col(ChatSession.id) == session_id).values(updated_at=utcnow())
        with self.engine.begin() as conn:
            conn.execute(statement)

    @_guarded
    def delete_session(self, session_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(ChatMessage).where(col(ChatMessage.session_id) == session_id))
            conn.execute(delete(ChatSession).where(col(ChatSession.id) == session_id))

    @_guarded
    def increment_daily_usage(self, user_id: str, capability: str, limit: int, day: Optional[date] = None) -> bool:
        """Atomically count one use of ``capability`` for today.

        Returns False, without counting, when the day's count already reached
        ``limit``. The check and the increment are one upsert statement, so
        concurrent requests for the same key can not both slip under the cap.
        """
        if limit <= 0:
            return False
        day = day or utcnow().date()

        dialect = self.engine.dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise StoreUnavailable(f"usage counter not supported on {dialect}")

        table = DailyUsage.__table__
        statement = insert(table).values(user_id=user_id, capability=capability, day=day, uses=1)
        statement = statement.on_conflict_do_update(
            index_elements=[table.c.user_id, table.c.capability, table.c.day],
            set_={"uses": table.c.uses + 1},
            where=table.c.uses < limit,
        ).returning(table.c.uses)

        with self.engine.begin() as conn:
            row = conn.execute(statement).first()
        return row is not None

    @_guarded
    def get_daily_usage(self, user_id: str, capability: str, day: Optional[date] = None) -> int:
        day = day or utcnow().date()
        with Session(self.engine) as session:
            usage = session.exec(
                select(DailyUsage).where(
                    DailyUsage.user_id == user_id,
                    DailyUsage.capability == capability,
                    DailyUsage.day == day,
                )
            ).first()
        return usage.uses if usage is not None else 0
