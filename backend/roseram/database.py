import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)

PREVIEW_TABLE = "auto_preview_instances"
SETUP_SESSION_TABLE = "machine_setup_sessions"
PREVIEW_APPS_TABLE = "fly_preview_apps"
ENV_VARS_TABLE = "user_env_vars"

_supabase_client = None


def get_supabase():
    """Get or create the Supabase client."""
    global _supabase_client
    if _supabase_client is not None:
        return _supabase_client

    url = os.getenv("SUPABASE_URL", "")
    key = os.getenv("SUPABASE_KEY", "")

    if not url or not key:
        logger.warning("SUPABASE_URL or SUPABASE_KEY not set, database disabled")
        return None

    from supabase import create_client

    _supabase_client = create_client(url, key)
    return _supabase_client


# ── Preview records ──


async def insert_preview_record(row: dict) -> Optional[dict]:
    """Insert an auto-preview row and return it, or None when the insert failed."""
    client = get_supabase()
    if client is None:
        return None

    try:
        result = client.table(PREVIEW_TABLE).insert(row).execute()
        return result.data[0] if result.data else None
    except Exception as e:
        logger.error(f"Failed to create preview record for {row.get('project_id')}: {e}")
        return None


async def update_preview_record(record_id: str, fields: dict) -> bool:
    client = get_supabase()
    if client is None:
        return False

    try:
        client.table(PREVIEW_TABLE).update(fields).eq("id", record_id).execute()
        return True
    except Exception as e:
        logger.error(f"Failed to update preview record {record_id}: {e}")
        return False


async def get_preview_record(project_id: str, user_id: Optional[str] = None) -> Optional[dict]:
    """Most recent preview row for a project, scoped to the user when one is given."""
    client = get_supabase()
    if client is None:
        return None

    try:
        query = client.table(PREVIEW_TABLE).select("*").eq("project_id", project_id)
        if user_id:
            query = query.eq("user_id", user_id)
        result = query.order("created_at", desc=True).limit(1).execute()
        return result.data[0] if result.data else None
    except Exception as e:
        logger.error(f"Failed to get preview record for {project_id}: {e}")
        return None


async def get_app_status_record(app_name: str) -> Optional[dict]:
    """Persisted status for a sandbox/app name, from either preview table.

    Raises on database errors so callers can report where the lookup failed.
    """
    client = get_supabase()
    if client is None:
        return None

    result = (
        client.table(PREVIEW_APPS_TABLE)
        .select("status, error_message, preview_url")
        .eq("fly_app_name", app_name)
        .limit(1)
        .execute()
    )
    if result.data:
        return result.data[0]

    result = (
        client.table(PREVIEW_TABLE)
        .select("status, error_message, preview_url")
        .eq("sandbox_name", app_name)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


# ── Setup sessions ──


async def insert_setup_session(row: dict) -> Optional[dict]:
    client = get_supabase()
    if client is None:
        return None

    try:
        result = client.table(SETUP_SESSION_TABLE).insert(row).execute()
        return result.data[0] if result.data else None
    except Exception as e:
        logger.error(f"Failed to create setup session for {row.get('project_id')}: {e}")
        return None


async def get_setup_session_row(session_id: str) -> Optional[dict]:
    client = get_supabase()
    if client is None:
        return None

    try:
        result = client.table(SETUP_SESSION_TABLE).select("*").eq("id", session_id).limit(1).execute()
        return result.data[0] if result.data else None
    except Exception as e:
        logger.error(f"Failed to get setup session {session_id}: {e}")
        return None


async def find_in_progress_session(project_id: str, user_id: str) -> Optional[dict]:
    client = get_supabase()
    if client is None:
        return None

    try:
        result = (
            client.table(SETUP_SESSION_TABLE)
            .select("*")
            .eq("project_id", project_id)
            .eq("user_id", user_id)
            .eq("overall_status", "in_progress")
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None
    except Exception as e:
        logger.error(f"Failed to look up setup session for {project_id}: {e}")
        return None


async def update_setup_session(session_id: str, fields: dict) -> bool:
    client = get_supabase()
    if client is None:
        return False

    try:
        client.table(SETUP_SESSION_TABLE).update(fields).eq("id", session_id).execute()
        return True
    except Exception as e:
        logger.error(f"Failed to update setup session {session_id}: {e}")
        return False


# ── Integration credentials ──


async def get_user_github_token(user_id: str) -> Optional[str]:
    """GitHub token the user stored through the integrations screen, if any."""
    client = get_supabase()
    if client is None:
        return None

    try:
        result = (
            client.table(ENV_VARS_TABLE)
            .select("metadata")
            .eq("user_id", user_id)
            .eq("provider", "github")
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return (result.data[0].get("metadata") or {}).get("token")
    except Exception as e:
        logger.debug(f"No GitHub token in {ENV_VARS_TABLE} for {user_id}: {e}")
        return None
