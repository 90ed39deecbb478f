# exam.py
# -----------------------------------------------------------------------------
# Timed exam session endpoints (JSON only; rendering is the client's job).
# - One SessionHost owns every live session; routes only marshal commands to it
# - Commands outside their state are no-ops: 200 with applied=false
# - A failed result save answers 503 and the client offers /retry
# - Sessions belong to the student who started them; one attempt per exam
# - Completed sessions leave the host and are answered from its finished cache
# -----------------------------------------------------------------------------

from typing import Any, Callable, Dict, Optional

from flask import Blueprint, request, jsonify, g

from coordinator import SubmissionCoordinator
from models import AttemptConflict, NotEnrolled, PersistenceError, QuestionsUnavailable, SubmitReason
from policy import SessionPolicy
from runtime import SessionHost


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path + "/exam".
    Required deps: host (SessionHost)
    Optional deps: fetch_exam (exam_id -> row with duration/passing_grade),
                   admit (exam_id, student_id -> raises NotEnrolled / AttemptConflict)
    """
    url_prefix = (base_path or "").rstrip("/") + "/exam"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Required deps -------------------------------------------------------
    host: SessionHost = deps["host"]
    fetch_exam: Callable[[str], Optional[Dict[str, Any]]] = deps.get("fetch_exam") or (lambda _exam_id: None)
    admit: Callable[[str, str], None] = deps.get("admit") or (lambda _exam_id, _student_id: None)

    # ---- helpers -------------------------------------------------------------
    def _unauthorized():
        return jsonify({"ok": False, "error": "unauthorized"}), 401

    def _owned(session_id: str) -> Optional[SubmissionCoordinator]:
        coord = host.get(session_id)
        if coord is None or coord.session.student_id != str(g.user_id):
            return None
        return coord

    def _state(coord: SubmissionCoordinator) -> Dict[str, Any]:
        return host.run(coord.snapshot)

    def _applied(coord: SubmissionCoordinator, applied: bool):
        return jsonify({"ok": True, "applied": bool(applied), "state": _state(coord)})

    def _not_found():
        return jsonify({"ok": False, "error": "session not found"}), 404

    def _not_live(session_id: str, command: bool = True):
        finished = host.finished(session_id)
        if finished is None or finished[0] != str(g.user_id):
            return _not_found()
        if command:
            return jsonify({"ok": True, "applied": False, "state": finished[1]})
        return jsonify({"ok": True, "state": finished[1]})

    def _conflict(e: AttemptConflict):
        return jsonify({"ok": False, "error": str(e), "session_id": e.session_id}), 409

    def _persistence_failed(coord: SubmissionCoordinator, e: PersistenceError):
        return jsonify({
            "ok": False,
            "error": str(e),
            "can_retry": True,
            "state": _state(coord),
        }), 503

    # ---- routes --------------------------------------------------------------
    @bp.post("/<exam_id>/sessions")
    def session_start(exam_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        base: SessionPolicy = host.policy
        try:
            admit(exam_id, str(g.user_id))
        except NotEnrolled as e:
            return jsonify({"ok": False, "error": str(e)}), 403
        except AttemptConflict as e:
            return _conflict(e)
        except Exception as e:
            print(f"[exam] admission check failed for exam {exam_id}: {e}")
            return jsonify({"ok": False, "error": "could not verify enrollment"}), 502
        policy = base.for_exam(fetch_exam(exam_id))
        try:
            coord = host.open_session(str(g.user_id), exam_id, policy)
        except AttemptConflict as e:
            return _conflict(e)
        try:
            host.call(coord.start())
        except QuestionsUnavailable as e:
            host.discard(coord.session.id)
            return jsonify({"ok": False, "error": str(e)}), 404
        except Exception as e:
            print(f"[exam] start failed for exam {exam_id}: {e}")
            host.discard(coord.session.id)
            return jsonify({"ok": False, "error": "could not load exam questions"}), 502
        return jsonify({"ok": True, "session_id": coord.session.id, "state": _state(coord)}), 201

    @bp.get("/sessions/<session_id>")
    def session_state(session_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        coord = _owned(session_id)
        if coord is None:
            return _not_live(session_id, command=False)
        return jsonify({"ok": True, "state": _state(coord)})

    @bp.post("/sessions/<session_id>/answer")
    def session_answer(session_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        coord = _owned(session_id)
        if coord is None:
            return _not_live(session_id)
        data = request.get_json(force=True, silent=True) or {}
        question_id = data.get("question_id")
        option_index = data.get("option_index")
        if question_id is None or not isinstance(option_index, int) or isinstance(option_index, bool):
            return jsonify({"ok": False, "error": "question_id and integer option_index required"}), 400
        applied = host.run(coord.answer, str(question_id), option_index)
        return _applied(coord, applied)

    @bp.post("/sessions/<session_id>/next")
    def session_next(session_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        coord = _owned(session_id)
        if coord is None:
            return _not_live(session_id)
        return _applied(coord, host.run(coord.next))

    @bp.post("/sessions/<session_id>/previous")
    def session_previous(session_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        coord = _owned(session_id)
        if coord is None:
            return _not_live(session_id)
        return _applied(coord, host.run(coord.previous))

    @bp.post("/sessions/<session_id>/goto")
    def session_goto(session_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        coord = _owned(session_id)
        if coord is None:
            return _not_live(session_id)
        data = request.get_json(force=True, silent=True) or {}
        try:
            index = int(data.get("index"))
        except (TypeError, ValueError):
            return jsonify({"ok": False, "error": "integer index required"}), 400
        return _applied(coord, host.run(coord.go_to, index))

    @bp.post("/sessions/<session_id>/signal")
    def session_signal(session_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        coord = _owned(session_id)
        if coord is None:
            return _not_live(session_id)
        data = request.get_json(force=True, silent=True) or {}
        try:
            opened = host.run(coord.signal, str(data.get("kind") or ""))
        except ValueError as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        return _applied(coord, opened)

    @bp.post("/sessions/<session_id>/visibility")
    def session_visibility(session_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        coord = _owned(session_id)
        if coord is None:
            return _not_live(session_id)
        data = request.get_json(force=True, silent=True) or {}
        host.run(coord.report_visibility, bool(data.get("hidden")))
        return _applied(coord, True)

    @bp.post("/sessions/<session_id>/acknowledge")
    def session_acknowledge(session_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        coord = _owned(session_id)
        if coord is None:
            return _not_live(session_id)
        host.run(coord.acknowledge)
        return _applied(coord, True)

    @bp.post("/sessions/<session_id>/submit")
    def session_submit(session_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        coord = _owned(session_id)
        if coord is None:
            return _not_live(session_id)
        try:
            result = host.call(coord.submit(SubmitReason.MANUAL.value))
        except PersistenceError as e:
            return _persistence_failed(coord, e)
        return _applied(coord, result is not None)

    @bp.post("/sessions/<session_id>/retry")
    def session_retry(session_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        coord = _owned(session_id)
        if coord is None:
            return _not_live(session_id)
        try:
            result = host.call(coord.retry())
        except PersistenceError as e:
            return _persistence_failed(coord, e)
        return _applied(coord, result is not None)

    return bp
