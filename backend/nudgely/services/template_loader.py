"""Service to load nudge templates from YAML files into database."""
import logging
from pathlib import Path

import yaml
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nudgely.models.template import NudgeTemplate

logger = logging.getLogger(__name__)

TEMPLATE_FIELDS = (
    "name",
    "description",
    "category",
    "tier",
    "frequency",
    "interval",
    "time_of_day",
    "day_of_week",
    "monthly_type",
    "day_of_month",
    "nth_occurrence",
    "day_of_week_for_monthly",
)


async def load_nudge_templates(db: AsyncSession, templates_dir: Path) -> list[NudgeTemplate]:
    """Load all nudge templates from YAML files and upsert to database.
    
    Returns list of loaded/updated NudgeTemplate objects.
    """
    if not templates_dir.exists():
        logger.warning(f"Nudge templates directory not found: {templates_dir}")
        return []
    
    loaded_templates = []
    
    for yaml_file in sorted(templates_dir.glob("*.yaml")):
        try:
            loaded_templates.extend(await _load_template_file(db, yaml_file))
        except (OSError, yaml.YAMLError, ValueError) as e:
            logger.error(f"Failed to load nudge templates from {yaml_file}: {e}")
    
    await db.commit()
    logger.info(f"Loaded {len(loaded_templates)} nudge templates")
    return loaded_templates


async def _load_template_file(db: AsyncSession, yaml_path: Path) -> list[NudgeTemplate]:
    """Load the templates listed in a single YAML file."""
    with open(yaml_path, "r") as f:
        data = yaml.safe_load(f) or {}
    
    category = data.get("category", "GENERAL")
    templates = []
    for entry in data.get("templates", []):
        slug = entry.get("slug")
        if not slug:
            logger.warning(f"Nudge template missing slug in {yaml_path}")
            continue
        
        fields = {key: entry[key] for key in TEMPLATE_FIELDS if key in entry}
        fields.setdefault("category", category)
        
        existing = (
            await db.execute(select(NudgeTemplate).where(NudgeTemplate.slug == slug))
        ).scalar_one_or_none()
        
        if existing:
            for key, value in fields.items():
                setattr(existing, key, value)
            logger.debug(f"Updated nudge template: {slug}")
            templates.append(existing)
        else:
            template = NudgeTemplate(slug=slug, **fields)
            db.add(template)
            logger.debug(f"Created nudge template: {slug}")
            templates.append(template)
    
    return templates


async def get_nudge_templates(db: AsyncSession, category: str | None = None) -> list[NudgeTemplate]:
    """Get nudge templates, optionally for one category."""
    query = select(NudgeTemplate).order_by(NudgeTemplate.category, NudgeTemplate.name)
    if category:
        query = query.where(NudgeTemplate.category == category.upper())
    return list((await db.execute(query)).scalars().all())
