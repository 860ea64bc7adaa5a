"""Payment authorization and booking saga repositories."""

import logging
from typing import Any, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import PaymentStatus, SagaState
from ..core.exceptions import RepositoryException
from ..models.booking_saga import BookingSaga
from ..models.payment import PaymentAuthorization
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


# Sagas that have not reached ``booked`` and may still be abandoned.
OPEN_SAGA_STATES = (SagaState.PENDING.value, SagaState.AUTHORIZED.value)


class PaymentRepository(BaseRepository[PaymentAuthorization]):
    def __init__(self, db: Session):
        super().__init__(db, PaymentAuthorization)

    def get_by_intent_id(self, payment_intent_id: str) -> Optional[PaymentAuthorization]:
        return self.find_one_by(payment_intent_id=payment_intent_id)

    def create_authorization(
        self,
        *,
        payment_intent_id: str,
        amount_cents: int,
        currency: str,
        slot_id: Optional[str],
        saga_id: Optional[str],
    ) -> PaymentAuthorization:
        return self.create(
            payment_intent_id=payment_intent_id,
            amount_cents=amount_cents,
            currency=currency,
            slot_id=slot_id,
            saga_id=saga_id,
            status=PaymentStatus.AUTHORIZED.value,
        )

    def list_authorized_for_slot(self, slot_id: str) -> List[PaymentAuthorization]:
        return self.find_by(slot_id=slot_id, status=PaymentStatus.AUTHORIZED.value)

    def list_orphaned_authorizations(self, limit: int = 200) -> List[PaymentAuthorization]:
        """Authorizations still held although their saga already failed."""
        query = (
            self._build_query()
            .join(BookingSaga, BookingSaga.id == PaymentAuthorization.saga_id)
            .filter(
                PaymentAuthorization.status == PaymentStatus.AUTHORIZED.value,
                BookingSaga.state == SagaState.FAILED_AND_REVERSED.value,
            )
            .order_by(PaymentAuthorization.created_at.asc())
            .limit(limit)
        )
        return self._execute_query(query)


class BookingSagaRepository(BaseRepository[BookingSaga]):
    def __init__(self, db: Session):
        super().__init__(db, BookingSaga)

    def get_by_intent_id(self, payment_intent_id: str) -> Optional[BookingSaga]:
        return self.find_one_by(payment_intent_id=payment_intent_id)

    def get_open_for_slot(self, slot_id: str, lock_token: str) -> Optional[BookingSaga]:
        """The not-yet-booked saga that owns this hold, if any."""
        query = (
            self._build_query()
            .filter(
                BookingSaga.slot_id == slot_id,
                BookingSaga.lock_token == lock_token,
                BookingSaga.state.in_(OPEN_SAGA_STATES),
            )
            .order_by(BookingSaga.created_at.desc(), BookingSaga.id.desc())
        )
        return query.first()

    def list_abandoned(self, now_unix: int, limit: int = 200) -> List[BookingSaga]:
        """Sagas that never reached ``booked`` before their lease ran out."""
        query = (
            self._build_query()
            .filter(
                BookingSaga.state.in_(OPEN_SAGA_STATES),
                BookingSaga.lease_expires_unix <= now_unix,
            )
            .order_by(BookingSaga.lease_expires_unix.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    def list_uncaptured(self, limit: int = 200) -> List[BookingSaga]:
        """Booked sagas still waiting for capture, excluding halted ones."""
        query = (
            self._build_query()
            .filter(
                BookingSaga.state == SagaState.BOOKED.value,
                BookingSaga.capture_halted_at.is_(None),
            )
            .order_by(BookingSaga.booked_at.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    def transition_state(
        self, saga_id: str, from_states: Sequence[str], to_state: str, **values: Any
    ) -> bool:
        """
        Move a saga to ``to_state`` only if it is still in one of ``from_states``.

        Returns True when the row changed. The in-session copy is expired so
        callers read the committed values.
        """
        stmt = (
            update(BookingSaga)
            .where(BookingSaga.id == saga_id, BookingSaga.state.in_(tuple(from_states)))
            .values(state=to_state, **values)
            .execution_options(synchronize_session=False)
        )
        try:
            changed = self.db.execute(stmt).rowcount
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error(f"Error transitioning saga {saga_id}: {str(e)}")
            raise RepositoryException(f"Failed to transition saga: {str(e)}")

        cached = self.db.identity_map.get(Session.identity_key(BookingSaga, saga_id))
        if cached is not None:
            self.db.expire(cached)
        return changed == 1
