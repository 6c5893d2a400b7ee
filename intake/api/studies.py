from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import Study
from ..schemas import StudyOut

router = APIRouter(prefix="/studies", tags=["studies"])


@router.get("/{study_instance_uid}", response_model=StudyOut)
async def get_study(study_instance_uid: str, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Study).where(Study.study_instance_uid == study_instance_uid))
    study = result.scalar_one_or_none()
    if study is None:
        raise HTTPException(status_code=404, detail="Study not found")
    return study
