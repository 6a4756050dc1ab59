# PersonaChat FastAPI app: character roleplay chat over several LLM backends
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi import Request
import logging
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Tuple

from pydantic import ValidationError

from personachat.cancellation import CancelToken, GenerationRegistry
from personachat.character_json import (
    apply_character_data, extract_character_json, normalize_character_data, stream_character_object,
)
from personachat.config_loader import CONFIG
from personachat.errors import (
    ApiError, BackendRejectedError, CharacterExtractionError, ConnectivityError, GenerationAborted, GenerationError,
    GenerationFaultedError, GenerationTimeoutError, ModelNotFoundError, PermissionDeniedError,
    QuotaExceededError, UnsupportedProviderError,
)
from personachat import generation
from personachat.models import (
    AppSettings, Character, ChatSession, Message, Record, apply_preset, make_preset, now_ms,
)
from personachat import sessions, translation
from personachat.storage import (
    init_db,
    db_get_character, db_get_all_characters, db_save_character, db_delete_character,
    db_get_session, db_get_sessions_for_character, db_save_session, db_delete_session,
    db_get_settings, db_save_settings,
)
from personachat.world_info import parse_lorebook_import

logging.basicConfig(
    level=CONFIG["server"]["log_level"],
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="PersonaChat")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CONFIG["server"]["cors_origins"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# One live generation per chat session
registry = GenerationRegistry()

CHARACTER_GEN_SCOPE = "character-gen"

ERROR_STATUS = [
    (QuotaExceededError, 429),
    (ModelNotFoundError, 404),
    (PermissionDeniedError, 403),
    (GenerationTimeoutError, 504),
    (UnsupportedProviderError, 400),
    (ConnectivityError, 502),
    (BackendRejectedError, 502),
    (GenerationFaultedError, 502),
    (ApiError, 502),
]


# ============================================================================
# REQUEST MODELS
# ============================================================================

class GenerateRequest(Record):
    session_id: Optional[str] = None
    messages: List[Message]
    character: Character
    settings: Optional[AppSettings] = None
    summary: str = ""


class SummarizeRequest(Record):
    session_id: Optional[str] = None
    messages: List[Message] = []
    settings: Optional[AppSettings] = None
    previous_summary: Optional[str] = None
    detail_level: Literal['short', 'medium', 'detailed'] = 'medium'
    mode: Literal['full', 'incremental'] = 'full'


class ConnectionTestRequest(Record):
    settings: Optional[AppSettings] = None


class CharacterGenRequest(Record):
    prompt: str = ""
    detail_level: Literal['short', 'medium', 'long'] = 'short'
    settings: Optional[AppSettings] = None
    files: List[Dict[str, str]] = []
    previous_output: Optional[str] = None
    include_sequence: bool = False
    detailed_sequence: bool = False


class CharacterExtractRequest(Record):
    text: str
    existing: Optional[Character] = None


class LorebookImportRequest(Record):
    data: Any
    name: str = "Imported Lorebook"


class NewSessionRequest(Record):
    character_id: str
    name: Optional[str] = None


class SendMessageRequest(Record):
    content: str = ""


class SwipeRequest(Record):
    direction: Literal['left', 'right']


class EditRequest(Record):
    content: str


class PresetRequest(Record):
    name: str


class TranslateRequest(Record):
    text: str
    target_lang: str = "en"


# ============================================================================
# HELPERS
# ============================================================================

def error_payload(exc: Exception) -> Tuple[int, Dict[str, Any]]:
    status = 500
    for error_type, error_status in ERROR_STATUS:
        if isinstance(exc, error_type):
            status = error_status
            break
    payload: Dict[str, Any] = {
        "success": False,
        "error": getattr(exc, "code", "generation_error"),
        "message": str(exc),
    }
    suggested = getattr(exc, "suggested_model", None)
    if suggested:
        payload["suggestedModel"] = suggested
    rejection_code = getattr(exc, "rejection_code", None)
    if rejection_code:
        payload["rejectionCode"] = rejection_code
    return status, payload


@app.exception_handler(GenerationError)
async def generation_error_handler(request: Request, exc: GenerationError):
    status, payload = error_payload(exc)
    return JSONResponse(payload, status_code=status)


def not_found(what: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": f"{what} not found"}, status_code=404)


async def prime_stream(stream: AsyncIterator[str]) -> Optional[str]:
    """Pull the first fragment so errors raised before any output become HTTP errors."""
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


def stream_response(
    stream: AsyncIterator[str],
    first: Optional[str],
    scope: str,
    token: CancelToken,
    on_fragment=None,
    on_finish=None,
) -> StreamingResponse:
    async def body():
        try:
            if first is not None:
                if on_fragment:
                    on_fragment(first)
                yield first
            async for fragment in stream:
                if on_fragment:
                    on_fragment(fragment)
                yield fragment
        except GenerationAborted:
            logger.info(f"Generation for {scope} aborted")
        except GenerationError as e:
            logger.error(f"Generation for {scope} failed mid-stream: {e}")
        finally:
            await stream.aclose()
            registry.finish(scope, token)
            if on_finish:
                on_finish()

    return StreamingResponse(body(), media_type="text/plain; charset=utf-8")


async def start_stream(
    stream: AsyncIterator[str],
    scope: str,
    token: CancelToken,
    on_fragment=None,
    on_finish=None,
) -> StreamingResponse:
    try:
        first = await prime_stream(stream)
    except Exception:
        await stream.aclose()
        registry.finish(scope, token)
        raise
    return stream_response(stream, first, scope, token, on_fragment, on_finish)


def load_session_context(session_id: str):
    session = db_get_session(session_id)
    if session is None:
        return None, None
    character = db_get_character(session.character_id)
    return session, character


# FastAPI startup handler
@app.on_event("startup")
async def startup_event():
    """Initialize resources when FastAPI app starts"""
    init_db()
    logger.info("PersonaChat started")


@app.get("/api/health")
async def health():
    return {"status": "ok"}


# ============================================================================
# GENERATION
# ============================================================================

@app.post("/api/chat/generate")
async def chat_generate(req: GenerateRequest):
    settings = req.settings or db_get_settings()
    scope = req.session_id or f"anonymous-{now_ms()}"
    token = registry.begin(scope)
    stream = generation.generate_response(req.messages, req.character, settings, req.summary, token)
    return await start_stream(stream, scope, token)


@app.post("/api/chat/cancel/{session_id}")
async def chat_cancel(session_id: str):
    return {"success": True, "cancelled": registry.cancel(session_id)}


@app.post("/api/summarize")
async def summarize(req: SummarizeRequest):
    settings = req.settings or db_get_settings()

    if not req.session_id:
        summary = await generation.summarize_chat(req.messages, settings, req.previous_summary, req.detail_level)
        return {"summary": summary}

    session = db_get_session(req.session_id)
    if session is None:
        return not_found("Session")
    if not session.messages:
        return {"summary": session.summary}

    last_id = session.messages[-1].id
    incremental = req.mode == 'incremental' and bool(session.summary)
    if incremental:
        pending = sessions.messages_pending_summary(session)
        if not pending:
            return {"summary": session.summary}
        summary = await generation.summarize_chat(pending, settings, session.summary, req.detail_level)
    else:
        summary = await generation.summarize_chat(session.messages, settings, None, req.detail_level)

    if summary:
        sessions.apply_summary(session, summary, last_id, append=incremental)
        db_save_session(session)
    return {"summary": summary}


@app.post("/api/test-connection")
async def test_connection(req: ConnectionTestRequest):
    await generation.test_connection(req.settings or db_get_settings())
    return {"status": "connected"}


@app.post("/api/translate")
async def translate(req: TranslateRequest):
    return {"translated": await translation.translate_text(req.text, req.target_lang)}


@app.post("/api/character-gen/generate")
async def character_generate(req: CharacterGenRequest):
    settings = req.settings or db_get_settings()
    token = registry.begin(CHARACTER_GEN_SCOPE)
    draft = generation.generate_character_draft(
        req.prompt, req.detail_level, settings,
        files=req.files,
        previous_output=req.previous_output,
        include_sequence=req.include_sequence,
        cancel=token,
        detailed_sequence=req.detailed_sequence,
    )
    stream = stream_character_object(draft, req.previous_output)
    return await start_stream(stream, CHARACTER_GEN_SCOPE, token)


@app.post("/api/character-gen/extract")
async def character_extract(req: CharacterExtractRequest):
    raw = extract_character_json(req.text)
    if raw is None:
        error = CharacterExtractionError()
        return JSONResponse({"success": False, "error": error.code, "message": str(error)}, status_code=422)

    fields = normalize_character_data(raw, req.existing)
    result: Dict[str, Any] = {"success": True, "fields": fields}
    if req.existing is not None:
        try:
            result["character"] = apply_character_data(req.existing, fields).to_json_dict()
        except ValidationError as e:
            return JSONResponse({"success": False, "error": "invalid_character", "message": str(e)}, status_code=422)
    return result


@app.post("/api/lorebooks/import")
async def import_lorebook(req: LorebookImportRequest):
    lorebook = parse_lorebook_import(req.data, req.name)
    if lorebook is None:
        return JSONResponse({"success": False, "error": "No valid lorebook entries found."}, status_code=422)
    return lorebook.to_json_dict()


# ============================================================================
# CHARACTERS
# ============================================================================

@app.get("/api/characters")
async def list_characters():
    return [c.to_json_dict() for c in db_get_all_characters()]


@app.get("/api/characters/{character_id}")
async def get_character(character_id: str):
    character = db_get_character(character_id)
    if character is None:
        return not_found("Character")
    return character.to_json_dict()


@app.post("/api/characters")
async def save_character(character: Character):
    if not db_save_character(character):
        return JSONResponse({"success": False, "error": "Failed to save character"}, status_code=500)
    return character.to_json_dict()


@app.delete("/api/characters/{character_id}")
async def delete_character(character_id: str):
    for session in db_get_sessions_for_character(character_id):
        registry.cancel(session.id, supersede=True)
    if not db_delete_character(character_id):
        return not_found("Character")
    return {"success": True}


# ============================================================================
# SESSIONS
# ============================================================================

@app.get("/api/sessions")
async def list_sessions(character_id: str):
    return [s.to_json_dict() for s in db_get_sessions_for_character(character_id)]


@app.post("/api/sessions")
async def create_session(req: NewSessionRequest):
    character = db_get_character(req.character_id)
    if character is None:
        return not_found("Character")
    session = sessions.start_session(character, req.name)
    db_save_session(session)
    return session.to_json_dict()


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str):
    session = db_get_session(session_id)
    if session is None:
        return not_found("Session")
    return session.to_json_dict()


@app.put("/api/sessions/{session_id}")
async def update_session(session_id: str, session: ChatSession):
    if session.id != session_id:
        return JSONResponse({"success": False, "error": "Session id mismatch"}, status_code=400)
    session.last_updated = now_ms()
    db_save_session(session)
    return session.to_json_dict()


@app.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str):
    registry.cancel(session_id, supersede=True)
    if not db_delete_session(session_id):
        return not_found("Session")
    return {"success": True}


async def _stream_into(session: ChatSession, message: Message, stream: AsyncIterator[str], token: CancelToken):
    """Callbacks that write streamed fragments into a message and persist at the end."""
    def on_fragment(fragment: str):
        sessions.append_continuation(message, fragment)

    def on_finish():
        if token.superseded:
            logger.info(f"Discarding superseded output for session {session.id}")
            return
        session.last_updated = now_ms()
        db_save_session(session)

    return await start_stream(stream, session.id, token, on_fragment, on_finish)


@app.post("/api/sessions/{session_id}/messages")
async def send_message(session_id: str, req: SendMessageRequest):
    """Append a user message (if any) and stream the character's reply into a new message."""
    session, character = load_session_context(session_id)
    if session is None or character is None:
        return not_found("Session")
    settings = db_get_settings()

    if req.content.strip():
        session.messages.append(sessions.new_message('user', req.content))
    history = list(session.messages)
    reply = sessions.new_message('model', "")
    session.messages.append(reply)

    token = registry.begin(session_id)
    stream = generation.generate_response(history, character, settings, session.summary, token)
    return await _stream_into(session, reply, stream, token)


@app.post("/api/sessions/{session_id}/messages/{message_id}/regenerate")
async def regenerate_message(session_id: str, message_id: str):
    session, character = load_session_context(session_id)
    if session is None or character is None:
        return not_found("Session")
    index = sessions.find_message_index(session, message_id)
    if index < 0:
        return not_found("Message")
    settings = db_get_settings()

    message = session.messages[index]
    history = sessions.history_before(session, message_id)
    sessions.begin_regenerate(message)

    token = registry.begin(session_id)
    stream = generation.generate_response(history, character, settings, session.summary, token)
    return await _stream_into(session, message, stream, token)


@app.post("/api/sessions/{session_id}/continue")
async def continue_message(session_id: str):
    """Finish a reply that was cut off, appending to the last model message."""
    session, character = load_session_context(session_id)
    if session is None or character is None:
        return not_found("Session")
    if not session.messages or session.messages[-1].role != 'model':
        return JSONResponse({"success": False, "error": "Last message is not a reply"}, status_code=409)

    last = session.messages[-1]
    settings = sessions.continuation_settings(db_get_settings(), len(last.content))
    history = list(session.messages) + [sessions.continue_instruction_message()]

    token = registry.begin(session_id)
    stream = generation.generate_response(history, character, settings, session.summary, token)
    return await _stream_into(session, last, stream, token)


@app.post("/api/sessions/{session_id}/messages/{message_id}/swipe")
async def swipe(session_id: str, message_id: str, req: SwipeRequest):
    session = db_get_session(session_id)
    if session is None:
        return not_found("Session")
    index = sessions.find_message_index(session, message_id)
    if index < 0:
        return not_found("Message")
    message = sessions.swipe_message(session.messages[index], req.direction)
    db_save_session(session)
    return message.to_json_dict()


@app.delete("/api/sessions/{session_id}/messages/{message_id}/swipe")
async def remove_swipe(session_id: str, message_id: str):
    session = db_get_session(session_id)
    if session is None:
        return not_found("Session")
    index = sessions.find_message_index(session, message_id)
    if index < 0:
        return not_found("Message")
    message = sessions.delete_swipe(session.messages[index])
    db_save_session(session)
    return message.to_json_dict()


@app.post("/api/sessions/{session_id}/messages/{message_id}/edit")
async def edit(session_id: str, message_id: str, req: EditRequest):
    session = db_get_session(session_id)
    if session is None:
        return not_found("Session")
    index = sessions.find_message_index(session, message_id)
    if index < 0:
        return not_found("Message")
    message = sessions.edit_message(session.messages[index], req.content)
    session.last_updated = now_ms()
    db_save_session(session)
    return message.to_json_dict()


@app.delete("/api/sessions/{session_id}/messages/{message_id}")
async def delete_message(session_id: str, message_id: str):
    session = db_get_session(session_id)
    if session is None:
        return not_found("Session")
    index = sessions.find_message_index(session, message_id)
    if index < 0:
        return not_found("Message")
    if not sessions.delete_message(session, message_id):
        return JSONResponse({"success": False, "error": "The first message cannot be deleted"}, status_code=409)
    db_save_session(session)
    return {"success": True}


# ============================================================================
# SETTINGS
# ============================================================================

@app.get("/api/settings")
async def get_settings():
    return db_get_settings().to_json_dict()


@app.post("/api/settings")
async def save_settings(settings: AppSettings):
    db_save_settings(settings)
    return settings.to_json_dict()


@app.post("/api/settings/presets")
async def save_preset(req: PresetRequest):
    settings = db_get_settings()
    preset = make_preset(settings, req.name)
    settings.saved_presets.append(preset)
    db_save_settings(settings)
    return preset.to_json_dict()


@app.post("/api/settings/presets/{preset_id}/apply")
async def load_preset(preset_id: str):
    settings = db_get_settings()
    preset = next((p for p in settings.saved_presets if p.id == preset_id), None)
    if preset is None:
        return not_found("Preset")
    settings = apply_preset(settings, preset)
    db_save_settings(settings)
    return settings.to_json_dict()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=CONFIG["server"]["host"], port=CONFIG["server"]["port"])
