from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth.dependencies import get_current_user
from auth.jwt import UserContext
from database import get_db
from routers.scans import get_graph_factory
from schemas.sites import MySitesResponse
from services.site_service import SiteService

router = APIRouter(prefix="/api/sites", tags=["sites"])


def get_site_service(
    db: Session = Depends(get_db),
    graph_factory=Depends(get_graph_factory),
) -> SiteService:
    return SiteService(db, graph=graph_factory(db))


@router.get("", response_model=MySitesResponse)
def list_my_sites(
    service: SiteService = Depends(get_site_service),
    current_user: UserContext = Depends(get_current_user),
):
    """SharePoint sites the user can access, with their scan and action history."""
    return service.list_my_sites(current_user.id)
