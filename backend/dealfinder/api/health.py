from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text
from dealfinder.database import get_db
from dealfinder.scheduler import get_scheduler_status

router = APIRouter()


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "status": "ok" if db_status == "healthy" else "degraded",
        "database": db_status,
        "scheduler": get_scheduler_status(),
    }
