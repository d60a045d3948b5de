# docdash/profiles.py
import logging

from docdash.auth import SessionContext
from docdash.backend import Backend
from docdash.schemas import ProfileRecord, ProfileUpdate, utcnow

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"


async def get_or_create_profile(backend: Backend, context: SessionContext) -> ProfileRecord:
    rows = await backend.select_rows(PROFILES_TABLE, {"id": context.user_id})
    if rows:
        return ProfileRecord.model_validate(rows[0])
    logger.info("No profile for %s yet, creating one", context.user_id)
    row = await backend.insert_row(PROFILES_TABLE, {"id": context.user_id})
    return ProfileRecord.model_validate(row)


async def update_profile(backend: Backend, context: SessionContext, changes: ProfileUpdate) -> ProfileRecord:
    await get_or_create_profile(backend, context)
    fields = changes.model_dump(exclude_unset=True)
    fields["updated_at"] = utcnow()
    rows = await backend.update_row(PROFILES_TABLE, {"id": context.user_id}, fields)
    return ProfileRecord.model_validate(rows[0])
