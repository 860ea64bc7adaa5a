"""Provider repository."""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.provider import Provider
from .base_repository import BaseRepository


class ProviderRepository(BaseRepository[Provider]):
    def __init__(self, db: Session):
        super().__init__(db, Provider)

    def get_by_external_id(self, external_provider_id: str) -> Optional[Provider]:
        return self.find_one_by(external_provider_id=external_provider_id)

    def get_by_application_id(self, application_id: str) -> Optional[Provider]:
        return self.find_one_by(application_id=application_id)

    def list_active(self) -> List[Provider]:
        query = (
            self._build_query()
            .filter(Provider.is_active.is_(True))
            .order_by(Provider.display_name.asc(), Provider.id.asc())
        )
        return self._execute_query(query)
