from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas import SiteRead
from app.security import Principal, require_any_role
from app.services.attendance_store import list_sites

router = APIRouter(tags=["sites"])


@router.get("/sites", response_model=list[SiteRead])
def get_sites(
    _principal: Principal = Depends(require_any_role),
    db: Session = Depends(get_db),
) -> list[SiteRead]:
    return [SiteRead.model_validate(site) for site in list_sites(db)]
