# api_fastapi.py - HTTP API used by the chat platform adapter
import asyncio
import json
import logging
import threading
from contextlib import contextmanager
from typing import Optional, Any

from fastapi import FastAPI, Request, Depends, HTTPException
from fastapi.responses import JSONResponse

from core.auth import require_api_key
from core.storage import StoryStatus
from core.story_engine import PackLimits, StoryEngineError, StoryErrorType, StoryOutcome, StoryParseError, pack

logger = logging.getLogger(__name__)

# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="Storybot",
    docs_url=None,  # Disable swagger UI
    redoc_url=None,  # Disable redoc
    openapi_url=None  # Disable openapi.json
)

# =============================================================================
# ENGINE INSTANCE (dependency injection)
# =============================================================================

_engine: Optional[Any] = None
_limits = PackLimits()


def set_engine(engine, limits: Optional[PackLimits] = None):
    """Set the StoryEngine instance for route handlers."""
    global _engine, _limits
    _engine = engine
    _limits = limits or PackLimits()
    _active_users.clear()
    logger.info("Story engine registered with FastAPI")


def get_engine():
    """Dependency to get the engine instance."""
    if _engine is None:
        raise HTTPException(status_code=503, detail="Story engine not initialized")
    return _engine


# =============================================================================
# PER-USER SERIALIZATION
# =============================================================================

_active_users: set = set()
_active_users_guard = threading.Lock()


@contextmanager
def user_operation(user_id: str):
    """Run one session operation per user at a time. Overlapping calls get 409."""
    with _active_users_guard:
        if user_id in _active_users:
            logger.info(f"Rejected overlapping story operation for user {user_id}")
            raise HTTPException(status_code=409, detail="Another story operation for this user is in progress")
        _active_users.add(user_id)
    try:
        yield
    finally:
        with _active_users_guard:
            _active_users.discard(user_id)


# =============================================================================
# REQUEST LOGGING / ERRORS
# =============================================================================

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log incoming requests."""
    if request.url.path == '/api/health':
        logger.debug(f"REQ: {request.method} {request.url.path}")
    else:
        logger.info(f"REQ: {request.method} {request.url.path}")
    response = await call_next(request)
    if response.status_code >= 400:
        logger.warning(f"RSP: {response.status_code} {request.method} {request.url.path}")
    return response


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception):
    logger.error(f"Unhandled error in {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


async def _read_json(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return data


def _content_from(data: dict) -> str:
    content = data.get('content')
    if isinstance(content, (dict, list)):
        return json.dumps(content)
    if not isinstance(content, str) or not content.strip():
        raise HTTPException(status_code=400, detail="content is required")
    return content


def _outcome_response(outcome: StoryOutcome) -> dict:
    step = outcome.step
    return {
        "error": outcome.error.value if outcome.error else None,
        "is_end": bool(step and step.is_end),
        "messages": [m.to_dict() for m in pack(step, limits=_limits)] if step else [],
    }


def _probe_response(probe) -> dict:
    step_data = probe.step_data
    return {
        "title": probe.metadata.title,
        "author": probe.metadata.author,
        "teaser": probe.metadata.teaser,
        "lines": [line.text for line in step_data.lines],
        "choices": [choice.text for choice in step_data.choices],
        "warnings": step_data.warnings,
        "errors": step_data.errors,
    }


def _content_error(e: Exception):
    if isinstance(e, StoryParseError):
        return HTTPException(status_code=400, detail=f"Invalid story: {e}")
    if isinstance(e, StoryEngineError) and e.story_error_type == StoryErrorType.STORY_NOT_FOUND:
        return HTTPException(status_code=404, detail="Story not found")
    return HTTPException(status_code=422, detail="Story took too long to calculate its first step")


# =============================================================================
# HEALTH
# =============================================================================

@app.get("/api/health")
async def health():
    return {"status": "ok", "engine": _engine is not None}


# =============================================================================
# STORY ROUTES
# =============================================================================

@app.get("/api/stories")
async def list_stories(owner_id: Optional[str] = None, _=Depends(require_api_key), engine=Depends(get_engine)):
    stories = await asyncio.to_thread(engine.story_store.get_stories, owner_id)
    return {"stories": [story.to_dict() for story in stories]}


@app.post("/api/stories")
async def create_story(request: Request, _=Depends(require_api_key), engine=Depends(get_engine)):
    """Validate content and store it as a new draft story."""
    data = await _read_json(request)
    owner_id = data.get('owner_id')
    if not owner_id:
        raise HTTPException(status_code=400, detail="owner_id is required")
    content = _content_from(data)
    try:
        story_id, probe = await asyncio.to_thread(engine.create_story, str(owner_id), content)
    except (StoryParseError, StoryEngineError) as e:
        raise _content_error(e)
    return {"story_id": story_id, **_probe_response(probe)}


@app.post("/api/stories/probe")
async def probe_story(request: Request, _=Depends(require_api_key), engine=Depends(get_engine)):
    """Run the first step of content without storing anything."""
    data = await _read_json(request)
    content = _content_from(data)
    try:
        probe = await asyncio.to_thread(engine.probe, content)
    except (StoryParseError, StoryEngineError) as e:
        raise _content_error(e)
    return _probe_response(probe)


@app.put("/api/stories/{story_id}/content")
async def replace_story_content(story_id: str, request: Request, _=Depends(require_api_key),
                                engine=Depends(get_engine)):
    """Replace story content. Resets issue reports and stops current plays."""
    data = await _read_json(request)
    content = _content_from(data)
    try:
        probe = await asyncio.to_thread(engine.replace_story_content, story_id, content)
    except (StoryParseError, StoryEngineError) as e:
        raise _content_error(e)
    return {"story_id": story_id, **_probe_response(probe)}


@app.put("/api/stories/{story_id}/status")
async def set_story_status(story_id: str, request: Request, _=Depends(require_api_key),
                           engine=Depends(get_engine)):
    """Change the status. With expected_status the change only happens from that status (undo of a delete)."""
    data = await _read_json(request)
    try:
        status = StoryStatus(data.get('status'))
        expected = data.get('expected_status')
        expected = StoryStatus(expected) if expected is not None else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"status must be one of {[s.value for s in StoryStatus]}")
    try:
        record = await asyncio.to_thread(engine.set_story_status, story_id, status, expected)
    except StoryEngineError as e:
        raise _content_error(e)
    return record.to_dict()


@app.delete("/api/stories/{story_id}")
async def delete_story(story_id: str, _=Depends(require_api_key), engine=Depends(get_engine)):
    """Delete a story. Published stories are only marked for deletion."""
    try:
        deleted = await asyncio.to_thread(engine.delete_story, story_id)
    except StoryEngineError as e:
        raise _content_error(e)
    return {"deleted": deleted, "marked_for_deletion": not deleted}


@app.post("/api/stories/{story_id}/suggestions")
async def add_story_suggestion(story_id: str, request: Request, _=Depends(require_api_key),
                               engine=Depends(get_engine)):
    data = await _read_json(request)
    target_story_id = data.get('target_story_id')
    if not target_story_id:
        raise HTTPException(status_code=400, detail="target_story_id is required")
    try:
        await asyncio.to_thread(engine.story_store.add_or_edit_story_suggestion,
                                story_id, target_story_id, data.get('message'))
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "ok"}


@app.delete("/api/stories/{story_id}/suggestions/{target_story_id}")
async def delete_story_suggestion(story_id: str, target_story_id: str, _=Depends(require_api_key),
                                  engine=Depends(get_engine)):
    deleted = await asyncio.to_thread(engine.story_store.delete_story_suggestion, story_id, target_story_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Suggestion not found")
    return {"status": "ok"}


# =============================================================================
# PLAY ROUTES
# =============================================================================

@app.post("/api/plays/{user_id}/start")
async def start_story(user_id: str, request: Request, _=Depends(require_api_key), engine=Depends(get_engine)):
    data = await _read_json(request)
    story_id = data.get('story_id')
    if not story_id:
        raise HTTPException(status_code=400, detail="story_id is required")
    with user_operation(user_id):
        outcome = await asyncio.to_thread(engine.start, user_id, str(story_id))
    return _outcome_response(outcome)


@app.post("/api/plays/{user_id}/continue")
async def continue_story(user_id: str, request: Request, _=Depends(require_api_key), engine=Depends(get_engine)):
    data = await _read_json(request)
    choice_index = data.get('choice_index')
    if not isinstance(choice_index, int) or isinstance(choice_index, bool):
        raise HTTPException(status_code=400, detail="choice_index must be an integer")
    variables = data.get('variables') or {}
    if not isinstance(variables, dict):
        raise HTTPException(status_code=400, detail="variables must be an object")
    with user_operation(user_id):
        outcome = await asyncio.to_thread(engine.continue_story, user_id, choice_index, list(variables.items()))
    return _outcome_response(outcome)


@app.post("/api/plays/{user_id}/restart")
async def restart_story(user_id: str, _=Depends(require_api_key), engine=Depends(get_engine)):
    with user_operation(user_id):
        outcome = await asyncio.to_thread(engine.restart, user_id)
    return _outcome_response(outcome)


@app.get("/api/plays/{user_id}")
async def get_story_state(user_id: str, _=Depends(require_api_key), engine=Depends(get_engine)):
    with user_operation(user_id):
        outcome = await asyncio.to_thread(engine.get_state, user_id)
    return _outcome_response(outcome)


@app.delete("/api/plays/{user_id}")
async def stop_story(user_id: str, _=Depends(require_api_key), engine=Depends(get_engine)):
    with user_operation(user_id):
        stopped = await asyncio.to_thread(engine.stop, user_id)
    return {"stopped": stopped}
