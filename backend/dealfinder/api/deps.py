from fastapi import Depends, Request
from sqlalchemy.orm import Session

from dealfinder.database import get_db
from dealfinder.runtime import DealRuntime
from dealfinder.services.deal_service import DealService


def get_runtime(request: Request) -> DealRuntime:
    return request.app.state.runtime


def get_deal_service(
    db: Session = Depends(get_db),
    runtime: DealRuntime = Depends(get_runtime),
) -> DealService:
    return runtime.deal_service(db)
