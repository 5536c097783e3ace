from __future__ import annotations
import json
from typing import Dict, Any, List
from sqlalchemy.orm import Session

from db.database import SessionLocal
from db.ledger_db import new_id, now
from db.models import CronExecution

def start_execution(job_name: str) -> str:
    db: Session = SessionLocal()
    try:
        eid = new_id()
        db.add(CronExecution(execution_id=eid, job_name=job_name, started_ts=now(), ok=False, summary_json="{}"))
        db.commit()
        return eid
    finally:
        db.close()

def finish_execution(execution_id: str, ok: bool, summary: Dict[str, Any] | None = None, error: str | None = None) -> None:
    db: Session = SessionLocal()
    try:
        row = db.query(CronExecution).filter(CronExecution.execution_id == execution_id).first()
        if row is None:
            raise ValueError(f"cron execution not found: {execution_id}")
        row.finished_ts = now()
        row.ok = bool(ok)
        row.summary_json = json.dumps(summary or {})
        row.error = (error or "")[:800] or None
        db.commit()
    finally:
        db.close()

def list_executions(job_name: str | None = None, limit: int = 50) -> List[Dict[str, Any]]:
    db: Session = SessionLocal()
    try:
        q = db.query(CronExecution)
        if job_name:
            q = q.filter(CronExecution.job_name == job_name)
        rows = q.order_by(CronExecution.started_ts.desc()).limit(limit).all()
        return [{
            "execution_id": r.execution_id, "job_name": r.job_name,
            "started_ts": r.started_ts, "finished_ts": r.finished_ts,
            "ok": bool(r.ok), "summary": json.loads(r.summary_json or "{}"), "error": r.error,
        } for r in rows]
    finally:
        db.close()
