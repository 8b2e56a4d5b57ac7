"""
User record store.

SQLAlchemy-backed repository for the `users` table, the
`billing_customers` secondary index and the `billing_events` ledger.
Constructed with an explicit session factory so handlers never reach for
a module-level client.

Status writes come from two writers:
- webhooks (authoritative): unconditional, ordered by provider event time
- reconciliation: compare-and-set on `revision`, yields to webhooks
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional, Tuple

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from nutritrack.core.database import users, billing_customers, billing_events, billing_job_runs
from nutritrack.core.errors import NotFoundError, StoreWriteError
from nutritrack.models.user import DEFAULT_TARGETS, MacroTargets, SubscriptionStatus, UserRecord


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_record(row) -> UserRecord:
    return UserRecord(
        user_id=row.user_id,
        email=row.email,
        subscription_status=SubscriptionStatus(row.subscription_status),
        stripe_customer_id=row.stripe_customer_id,
        targets=MacroTargets(**(row.targets or {})),
        revision=row.revision,
        status_event_created=row.status_event_created,
        last_reconciled_at=_aware(row.last_reconciled_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


class UserStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreWriteError(f"User store operation failed: {e.__class__.__name__}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # User records
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._session() as session:
            row = session.execute(select(users).where(users.c.user_id == user_id)).first()
            return _row_to_record(row) if row else None

    def require_user(self, user_id: str) -> UserRecord:
        record = self.get_user(user_id)
        if record is None:
            raise UserNotFoundError(user_id)
        return record

    def create_user(self, user_id: str, email: Optional[str], now: datetime) -> tuple[UserRecord, bool]:
        """Create the record for a new sign-up. Returns (record, created)."""
        existing = self.get_user(user_id)
        if existing:
            return existing, False
        try:
            with self._session() as session:
                session.execute(
                    insert(users).values(
                        user_id=user_id,
                        email=email,
                        subscription_status=SubscriptionStatus.INACTIVE.value,
                        stripe_customer_id=None,
                        targets=DEFAULT_TARGETS.model_dump(),
                        revision=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except StoreWriteError as e:
            # Concurrent sign-up for the same id
            if not isinstance(e.__cause__, IntegrityError):
                raise
            return self.require_user(user_id), False
        return self.require_user(user_id), True

    def update_targets(self, user_id: str, targets: MacroTargets, now: datetime) -> UserRecord:
        with self._session() as session:
            result = session.execute(
                update(users)
                .where(users.c.user_id == user_id)
                .values(targets=targets.model_dump(), updated_at=now)
            )
            if result.rowcount == 0:
                raise UserNotFoundError(user_id)
        return self.require_user(user_id)

    def list_linked_users(
        self,
        page_size: int = 100,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[UserRecord]:
        """
        One page of users that have a billing customer, oldest first.

        `after` is the `(created_at, user_id)` of the last record of the
        previous page.
        """
        query = select(users).where(users.c.stripe_customer_id.is_not(None))
        if after is not None:
            created_at, user_id = after
            query = query.where(
                or_(
                    users.c.created_at > created_at,
                    and_(users.c.created_at == created_at, users.c.user_id > user_id),
                )
            )
        with self._session() as session:
            rows = session.execute(
                query.order_by(users.c.created_at, users.c.user_id).limit(page_size)
            ).fetchall()
            return [_row_to_record(r) for r in rows]

    # ------------------------------------------------------------------
    # Webhook writes (authoritative)
    # ------------------------------------------------------------------

    def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        with self._session() as session:
            row = session.execute(
                select(billing_customers.c.user_id).where(
                    billing_customers.c.stripe_customer_id == customer_id
                )
            ).first()
            return row[0] if row else None

    def apply_webhook_status(
        self,
        user_id: str,
        status: SubscriptionStatus,
        *,
        event_created: Optional[int],
        now: datetime,
        customer_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> str:
        """
        Apply a status carried by a provider event.

        Links `customer_id` (record + secondary index) when given. Events
        older than the last applied one do not change status.

        Returns:
            "applied", "unchanged" or "stale"

        Raises:
            UserNotFoundError: no record for user_id
        """
        with self._session() as session:
            row = session.execute(
                select(users).where(users.c.user_id == user_id).with_for_update()
            ).first()
            if row is None:
                raise UserNotFoundError(user_id)

            if customer_id:
                self._link_customer(session, user_id, customer_id)

            last_created = row.status_event_created
            if event_created is not None and last_created is not None and event_created < last_created:
                if customer_id and row.stripe_customer_id != customer_id:
                    session.execute(
                        update(users)
                        .where(users.c.user_id == user_id)
                        .values(stripe_customer_id=customer_id, updated_at=now)
                    )
                return "stale"

            values = {}
            if row.subscription_status != status.value:
                values["subscription_status"] = status.value
            if customer_id and row.stripe_customer_id != customer_id:
                values["stripe_customer_id"] = customer_id
            if email and not row.email:
                values["email"] = email
            if event_created is not None and event_created != last_created:
                values["status_event_created"] = event_created

            if not values:
                return "unchanged"

            values["revision"] = users.c.revision + 1
            values["updated_at"] = now
            session.execute(update(users).where(users.c.user_id == user_id).values(**values))
            return "applied"

    def _link_customer(self, session: Session, user_id: str, customer_id: str) -> None:
        existing = session.execute(
            select(billing_customers.c.user_id).where(
                billing_customers.c.stripe_customer_id == customer_id
            )
        ).first()
        if existing is None:
            session.execute(
                insert(billing_customers).values(stripe_customer_id=customer_id, user_id=user_id)
            )
        elif existing[0] != user_id:
            session.execute(
                update(billing_customers)
                .where(billing_customers.c.stripe_customer_id == customer_id)
                .values(user_id=user_id)
            )

    # ------------------------------------------------------------------
    # Reconciliation writes (conditional)
    # ------------------------------------------------------------------

    def compare_and_set_status(
        self,
        user_id: str,
        *,
        expected_revision: int,
        status: SubscriptionStatus,
        now: datetime,
    ) -> bool:
        """Write status only if nobody else wrote since `expected_revision` was read."""
        with self._session() as session:
            result = session.execute(
                update(users)
                .where(users.c.user_id == user_id, users.c.revision == expected_revision)
                .values(
                    subscription_status=status.value,
                    revision=users.c.revision + 1,
                    last_reconciled_at=now,
                    updated_at=now,
                )
            )
            return result.rowcount == 1

    def mark_reconciled(self, user_id: str, now: datetime) -> None:
        with self._session() as session:
            session.execute(
                update(users).where(users.c.user_id == user_id).values(last_reconciled_at=now)
            )

    # ------------------------------------------------------------------
    # Event ledger
    # ------------------------------------------------------------------

    def is_event_processed(self, event_id: str) -> bool:
        with self._session() as session:
            row = session.execute(
                select(billing_events.c.processed).where(billing_events.c.stripe_event_id == event_id)
            ).first()
            return bool(row and row.processed)

    def record_event(
        self,
        event_id: str,
        event_type: str,
        payload_hash: str,
        *,
        outcome: str,
        user_id: Optional[str],
        now: datetime,
        error: Optional[str] = None,
    ) -> bool:
        """
        Upsert the ledger row for an event.

        A row with an error stays unprocessed so redelivery retries it.
        Returns False if another delivery already recorded it as processed.
        """
        processed = error is None
        values = dict(
            event_type=event_type,
            payload_hash=payload_hash,
            processed=processed,
            processed_at=now if processed else None,
            outcome=outcome,
            user_id=user_id,
            error=error,
        )
        with self._session() as session:
            row = session.execute(
                select(billing_events.c.processed).where(billing_events.c.stripe_event_id == event_id)
            ).first()
            if row is not None:
                if row.processed:
                    return False
                session.execute(
                    update(billing_events)
                    .where(billing_events.c.stripe_event_id == event_id)
                    .values(**values)
                )
                return True
        try:
            with self._session() as session:
                session.execute(insert(billing_events).values(stripe_event_id=event_id, **values))
        except StoreWriteError as e:
            # Concurrent delivery of the same event won the insert
            if isinstance(e.__cause__, IntegrityError):
                return False
            raise
        return True

    def get_event(self, event_id: str):
        with self._session() as session:
            return session.execute(
                select(billing_events).where(billing_events.c.stripe_event_id == event_id)
            ).first()

    # ------------------------------------------------------------------
    # Job runs
    # ------------------------------------------------------------------

    def record_job_run(self, job_name: str, *, started_at: datetime, finished_at: datetime, status: str, stats_json: str) -> None:
        with self._session() as session:
            session.execute(
                insert(billing_job_runs).values(
                    job_name=job_name,
                    started_at=started_at,
                    finished_at=finished_at,
                    status=status,
                    stats_json=stats_json,
                )
            )

    def list_job_runs(self, job_name: str):
        with self._session() as session:
            return session.execute(
                select(billing_job_runs)
                .where(billing_job_runs.c.job_name == job_name)
                .order_by(billing_job_runs.c.id)
            ).fetchall()
