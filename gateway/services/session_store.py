"""Durable per-user session records.

Every public method opens its own database session and commits before
returning, so each call is one atomic single-record upsert or one bulk
statement over an explicit id set.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import case, func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from gateway.logging_config import get_logger
from gateway.models import UserSession
from gateway.services.state_machine import TRACKED_STATES, SessionRecord, SessionState

logger = get_logger("session_store")

_UPSERT_DIALECTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def _ensure_timezone(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _state_value(state) -> str:
    return state.value if isinstance(state, SessionState) else str(state)


def to_record(row: UserSession, previous_interaction: Optional[datetime] = None) -> SessionRecord:
    return SessionRecord(
        user_id=row.user_id,
        state=SessionState(row.state),
        prompted_at=_ensure_timezone(row.prompted_at),
        last_interaction=_ensure_timezone(row.last_interaction),
        created_at=_ensure_timezone(row.created_at),
        updated_at=_ensure_timezone(row.updated_at),
        previous_interaction=_ensure_timezone(previous_interaction),
    )


def transient_record(user_id: str, now: Optional[datetime] = None) -> SessionRecord:
    """Default record used when the store cannot be reached. Never persisted."""
    now = now or datetime.now(timezone.utc)
    return SessionRecord(
        user_id=user_id,
        state=SessionState.IDLE,
        last_interaction=now,
        persisted=False,
    )


class SessionStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _insert_if_missing(self, db: Session, user_id: str, values: dict) -> bool:
        """Insert a row unless one exists for user_id. Returns True if this call created it."""
        insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
        if insert is not None:
            stmt = (
                insert(UserSession)
                .values(user_id=user_id, **values)
                .on_conflict_do_nothing(index_elements=["user_id"])
            )
            return db.execute(stmt).rowcount > 0

        try:
            with db.begin_nested():
                db.add(UserSession(user_id=user_id, **values))
            return True
        except IntegrityError:
            # Lost the race to a concurrent creator; the caller re-reads the winner
            return False

    def _default_values(self, now: datetime) -> dict:
        return {
            "state": SessionState.IDLE.value,
            "prompted_at": None,
            "last_interaction": now,
            "created_at": now,
            "updated_at": now,
        }

    def get(self, user_id: str) -> Optional[SessionRecord]:
        with self._session_factory() as db:
            row = db.query(UserSession).filter(UserSession.user_id == user_id).first()
            return to_record(row) if row else None

    def get_or_create(self, user_id: str, now: Optional[datetime] = None) -> SessionRecord:
        """Return the user's record with last_interaction refreshed, creating an idle one if missing."""
        now = now or datetime.now(timezone.utc)
        with self._session_factory() as db:
            created = self._insert_if_missing(db, user_id, self._default_values(now))
            row = db.query(UserSession).filter(UserSession.user_id == user_id).one()

            previous = None if created else _ensure_timezone(row.last_interaction)
            if previous is not None and previous < now:
                row.last_interaction = now
                row.updated_at = now
            db.commit()

            if created:
                logger.info(f"New session created for user: {user_id}")
            return to_record(row, previous_interaction=previous)

    def apply_partial(self, user_id: str, fields: dict, now: Optional[datetime] = None) -> None:
        """Upsert the given fields. last_interaction is only ever moved forward."""
        now = now or datetime.now(timezone.utc)
        values = {key: _state_value(value) if key == "state" else value for key, value in fields.items()}

        with self._session_factory() as db:
            self._insert_if_missing(db, user_id, {**self._default_values(now), **values})

            incoming = values.pop("last_interaction", None)
            updates = {getattr(UserSession, key): value for key, value in values.items()}
            if incoming is not None:
                updates[UserSession.last_interaction] = case(
                    (UserSession.last_interaction < incoming, incoming),
                    else_=UserSession.last_interaction,
                )
            updates[UserSession.updated_at] = now
            db.query(UserSession).filter(UserSession.user_id == user_id).update(
                updates, synchronize_session=False
            )
            db.commit()

    def find_expired(self, state: SessionState, cutoff: datetime) -> list[SessionRecord]:
        """All records in `state` whose last_interaction is older than cutoff."""
        with self._session_factory() as db:
            rows = (
                db.query(UserSession)
                .filter(UserSession.state == state.value, UserSession.last_interaction < cutoff)
                .order_by(UserSession.last_interaction)
                .all()
            )
            return [to_record(row) for row in rows]

    def bulk_transition(
        self,
        user_ids: Iterable[str],
        fields: dict,
        from_state: Optional[SessionState] = None,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Apply the same field changes to a batch of users in one statement.

        Returns the user ids actually updated. With from_state set, rows that
        left that state since they were read are skipped and not returned.
        """
        user_ids = list(user_ids)
        if not user_ids:
            return []
        now = now or datetime.now(timezone.utc)
        values = {key: _state_value(value) if key == "state" else value for key, value in fields.items()}
        values["updated_at"] = now

        conditions = [UserSession.user_id.in_(user_ids)]
        if from_state is not None:
            conditions.append(UserSession.state == from_state.value)

        with self._session_factory() as db:
            if db.get_bind().dialect.update_returning:
                stmt = (
                    update(UserSession)
                    .where(*conditions)
                    .values(**values)
                    .returning(UserSession.user_id)
                    .execution_options(synchronize_session=False)
                )
                updated = list(db.execute(stmt).scalars())
            else:
                updated = [
                    user_id
                    for (user_id,) in db.query(UserSession.user_id).filter(*conditions).with_for_update().all()
                ]
                if updated:
                    db.query(UserSession).filter(UserSession.user_id.in_(updated), *conditions[1:]).update(
                        values, synchronize_session=False
                    )
            db.commit()
            return updated

    def purge_idle_before(self, cutoff: datetime) -> int:
        """Delete idle records untouched since cutoff. Returns the number deleted."""
        with self._session_factory() as db:
            deleted = (
                db.query(UserSession)
                .filter(
                    UserSession.state == SessionState.IDLE.value,
                    UserSession.last_interaction < cutoff,
                    (UserSession.prompted_at.is_(None)) | (UserSession.prompted_at < cutoff),
                )
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted

    def count_tracked(self) -> int:
        with self._session_factory() as db:
            return (
                db.query(func.count(UserSession.id))
                .filter(UserSession.state.in_([state.value for state in TRACKED_STATES]))
                .scalar()
            ) or 0

    def count_by_state(self) -> dict[str, int]:
        with self._session_factory() as db:
            rows = db.query(UserSession.state, func.count(UserSession.id)).group_by(UserSession.state).all()
        counts = {state.value: 0 for state in SessionState}
        for state, count in rows:
            counts[state] = count
        return counts
