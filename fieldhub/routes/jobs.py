from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import Job, StorageLocation
from ..schemas.jobs import JobCreate, JobResponse


router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=List[JobResponse])
def list_jobs(status: Optional[str] = None, db: Session = Depends(get_db)):
    query = db.query(Job)
    if status:
        query = query.filter(Job.status == status)
    return query.order_by(Job.created_at.desc()).all()


@router.post("", response_model=JobResponse)
def create_job(payload: JobCreate, db: Session = Depends(get_db)):
    if payload.location_id and not db.query(StorageLocation).filter(StorageLocation.id == payload.location_id).first():
        raise HTTPException(status_code=400, detail="Unknown location")
    row = Job(**payload.model_dump(), updated_at=datetime.now(timezone.utc))
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, db: Session = Depends(get_db)):
    row = db.query(Job).filter(Job.id == job_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Job not found")
    return row
