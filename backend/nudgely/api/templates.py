"""Nudge template endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from nudgely.database import get_db
from nudgely.schemas.template import NudgeTemplateResponse
from nudgely.services.template_loader import get_nudge_templates

router = APIRouter(prefix="/templates", tags=["templates"])


@router.get("", response_model=list[NudgeTemplateResponse])
async def list_templates(category: str | None = None, db: AsyncSession = Depends(get_db)):
    """Get ready-made nudge templates (no auth required)."""
    return await get_nudge_templates(db, category)
