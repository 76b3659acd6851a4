"""
Session API routes - learner intents against a server-hosted attempt engine.

Every route resolves the attempt's single AttemptStateMachine through the
SessionRegistry and returns the machine's view: the attempt document plus
the current question, remaining time, palette and section summary.

Engine errors (stale state, invalid operations, storage failures) are
mapped to HTTP responses by the app-wide handler in main.py.
"""

from fastapi import APIRouter, Depends, HTTPException

from attempt_engine.core.model import FlushReason
from attempt_engine.schemas import (
    AnswerRequest, EndSectionRequest, NavigateRequest, StartAttemptRequest,
)
from attempt_engine.services.sessions import SessionRegistry, get_registry
from attempt_engine.logging_config import get_logger, log_with_context

router = APIRouter()
logger = get_logger("http")


@router.post("/api/sessions")
def open_session(payload: StartAttemptRequest, registry: SessionRegistry = Depends(get_registry)):
    """Start the user's attempt on a template, or resume the open one."""
    machine = registry.open(payload.user_id, payload.template_id)
    log_with_context(logger, "INFO", "Session opened",
        context={"attempt_id": machine.attempt.id, "user_id": payload.user_id},
        extra_data={"status": machine.status.value})
    return machine.view()


@router.get("/api/sessions/{attempt_id}")
def get_session(attempt_id: str, registry: SessionRegistry = Depends(get_registry)):
    return registry.get(attempt_id).view()


@router.post("/api/sessions/{attempt_id}/answer")
def answer(attempt_id: str, payload: AnswerRequest, registry: SessionRegistry = Depends(get_registry)):
    """
    Answer the displayed question.

    `selected_option_index` selects (single_select), `text` writes
    (free_text / essay), and an empty body clears a selection.
    """
    machine = registry.get(attempt_id)
    if payload.selected_option_index is not None:
        machine.select_option(payload.selected_option_index)
    elif payload.text is not None:
        machine.write_text(payload.text)
    else:
        machine.answer_question(None)
    return machine.view()


@router.post("/api/sessions/{attempt_id}/review")
def toggle_review(attempt_id: str, registry: SessionRegistry = Depends(get_registry)):
    machine = registry.get(attempt_id)
    machine.toggle_review()
    return machine.view()


@router.post("/api/sessions/{attempt_id}/navigate")
def navigate(attempt_id: str, payload: NavigateRequest, registry: SessionRegistry = Depends(get_registry)):
    machine = registry.get(attempt_id)
    machine.navigate(payload.question_index)
    return machine.view()


@router.post("/api/sessions/{attempt_id}/end-section")
def end_section(attempt_id: str, payload: EndSectionRequest,
                registry: SessionRegistry = Depends(get_registry)):
    """End the active section. Irrevocable, so the body must carry confirm: true."""
    machine = registry.get(attempt_id)
    machine.end_section(confirm=payload.confirm)
    return machine.view()


@router.post("/api/sessions/{attempt_id}/submit")
def submit(attempt_id: str, registry: SessionRegistry = Depends(get_registry)):
    machine = registry.get(attempt_id)
    stats = machine.submit()
    log_with_context(logger, "INFO", "Session submitted",
        context={"attempt_id": attempt_id},
        extra_data={"raw_score": stats.raw_score})
    return machine.view()


@router.post("/api/sessions/{attempt_id}/pause")
def pause(attempt_id: str, registry: SessionRegistry = Depends(get_registry)):
    machine = registry.get(attempt_id)
    machine.pause()
    return machine.view()


@router.post("/api/sessions/{attempt_id}/resume")
def resume(attempt_id: str, registry: SessionRegistry = Depends(get_registry)):
    machine = registry.get(attempt_id)
    machine.resume()
    return machine.view()


@router.post("/api/sessions/{attempt_id}/flush")
def flush(attempt_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Save now. A storage failure comes back as 503 with retryable: true."""
    machine = registry.get(attempt_id)
    update = machine.flush(FlushReason.MANUAL)
    return {
        "attempt_id": attempt_id,
        "sequence": update.sequence,
        "pending_flushes": machine.sync.pending_count,
    }


@router.post("/api/sessions/{attempt_id}/cancel")
def cancel(attempt_id: str, registry: SessionRegistry = Depends(get_registry)):
    machine = registry.get(attempt_id)
    machine.cancel()
    return machine.view()


@router.delete("/api/sessions/{attempt_id}")
def close_session(attempt_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Stop hosting the attempt. Flushed progress stays resumable."""
    if not registry.close(attempt_id):
        raise HTTPException(status_code=404, detail="No hosted session for this attempt")
    return {"attempt_id": attempt_id, "closed": True}
