"""Account profile: the caller's user row plus optional personal details."""

from typing import Any, Dict

from sqlalchemy.orm import Session

from storefront.logger import get_logger
from storefront.models import User, UserProfile
from storefront.schemas import UpdateProfileRequest, UserOut

logger = get_logger(__name__)


class UserService:
    def __init__(self, db: Session):
        self.db = db

    def get_profile(self, user: User) -> Dict[str, Any]:
        return UserOut.model_validate(user).model_dump(mode="json")

    def update_profile(self, user: User, data: UpdateProfileRequest) -> Dict[str, Any]:
        """Rename the user and upsert the profile row; omitted profile fields keep their values."""
        fields = data.model_dump(exclude={"name"}, exclude_unset=True)
        try:
            user.name = data.name
            profile = self.db.get(UserProfile, user.id)
            if profile is None:
                profile = UserProfile(user_id=user.id)
                self.db.add(profile)
            for field, value in fields.items():
                setattr(profile, field, value)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Updated profile for user %s", user.id)
        self.db.refresh(user)
        return self.get_profile(user)
