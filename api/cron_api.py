from fastapi import APIRouter, Depends

from api.cron_dispatcher import dispatch_once
from api.security_deps import require_cron_secret
from db import cron_log_db

router = APIRouter(prefix="/cron", tags=["cron"])

@router.get("/process", dependencies=[Depends(require_cron_secret)])
def process():
    return dispatch_once()

@router.get("/executions", dependencies=[Depends(require_cron_secret)])
def executions(limit: int = 20):
    return {"executions": cron_log_db.list_executions(limit=limit)}
