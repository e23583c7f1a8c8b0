"""Profile endpoints for the authenticated user."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from storefront.database import get_db
from storefront.dependencies import get_current_user
from storefront.models import User
from storefront.schemas import UpdateProfileRequest, success
from storefront.users import UserService

router = APIRouter(prefix="/api/user", tags=["user"])


@router.get("/profile")
def get_profile(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return success(UserService(db).get_profile(user))


@router.put("/profile")
def update_profile(
    request: UpdateProfileRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return success(UserService(db).update_profile(user, request), message="Profile updated")
