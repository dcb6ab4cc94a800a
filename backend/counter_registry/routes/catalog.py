from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from counter_registry.core.database import get_db
from counter_registry.core.deps import get_current_user
from counter_registry.models.user import User
from counter_registry.services import counter_registry_service


router = APIRouter()


@router.get("")
def get_catalog(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """Channels, addons, staff / manager options and products for the editing session"""
    return counter_registry_service.get_catalog(db)
