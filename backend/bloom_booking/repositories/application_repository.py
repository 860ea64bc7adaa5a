"""Application repository."""

from datetime import datetime
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import ApplicationStatus
from ..core.exceptions import RepositoryException
from ..models.application import Application
from .base_repository import BaseRepository


class ApplicationRepository(BaseRepository[Application]):
    def __init__(self, db: Session):
        super().__init__(db, Application)

    def get_active_by_email(self, email: str) -> Optional[Application]:
        query = self._build_query().filter(
            Application.email == email,
            Application.status != ApplicationStatus.WITHDRAWN.value,
        )
        return query.first()

    def get_by_any_offer_token(self, token: str) -> Optional[Application]:
        """Match the live offer token or the one already consumed by acceptance."""
        query = self._build_query().filter(
            or_(Application.offer_token == token, Application.consumed_offer_token == token)
        )
        return query.first()

    def consume_offer_token(self, application_id: str, token: str, accepted_at: datetime) -> bool:
        """
        Accept the offer in one conditional UPDATE.

        Matches only while the application is ``offer_sent`` with this live
        token and a signed contract; the token moves to ``consumed_offer_token``
        so it can never be accepted again.
        """
        stmt = (
            update(Application)
            .where(
                Application.id == application_id,
                Application.status == ApplicationStatus.OFFER_SENT.value,
                Application.offer_token == token,
                Application.signed_contract_url.is_not(None),
            )
            .values(
                status=ApplicationStatus.OFFER_ACCEPTED.value,
                offer_accepted_at=accepted_at,
                consumed_offer_token=token,
                offer_token=None,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            changed = self.db.execute(stmt).rowcount
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error(f"Error accepting offer for application {application_id}: {str(e)}")
            raise RepositoryException(f"Failed to accept offer: {str(e)}")

        cached = self.db.identity_map.get(Session.identity_key(Application, application_id))
        if cached is not None:
            self.db.expire(cached)
        return changed == 1
