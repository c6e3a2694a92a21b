#!/usr/bin/env python3
"""StepSmith HTTP server: start, watch, cancel and resume pipeline runs."""

import logging
import os
import threading
import time
import uuid

from flask import Flask, jsonify, request

from config.providers import PROVIDER_LIMITS
from core.collaborators import build_collaborators
from core.orchestrator import Orchestrator
from core.patches import diff_stats, parse_diff_lines
from core.state import Step

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config["WORKSPACE_ROOT"] = os.environ.get("STEPSMITH_ROOT", os.getcwd())

# Pipeline jobs keyed by job_id: {id: {"orchestrator": ..., "thread": ..., "created": timestamp}}
_jobs = {}
_jobs_lock = threading.Lock()
_MAX_JOBS = 50  # prevent unbounded memory growth
_JOB_TTL = 3600  # expire jobs after 1 hour

_collaborators = None
_collaborators_lock = threading.Lock()


def get_collaborators():
    """Collaborators shared by every job, so admission control is shared too."""
    global _collaborators
    with _collaborators_lock:
        if _collaborators is None:
            _collaborators = build_collaborators(root=app.config["WORKSPACE_ROOT"])
        return _collaborators


def _cleanup_jobs():
    """Remove expired, finished jobs. Called under _jobs_lock."""
    now = time.time()
    expired = [
        jid for jid, job in _jobs.items()
        if now - job["created"] > _JOB_TTL and not job["thread"].is_alive()
    ]
    for jid in expired:
        del _jobs[jid]
    # If still over limit, remove oldest finished jobs
    if len(_jobs) > _MAX_JOBS:
        finished = sorted(
            ((jid, job) for jid, job in _jobs.items() if not job["thread"].is_alive()),
            key=lambda x: x[1]["created"],
        )
        for jid, _ in finished[:len(_jobs) - _MAX_JOBS]:
            del _jobs[jid]


def _start(target, *args):
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


def _get_job(job_id):
    with _jobs_lock:
        return _jobs.get(job_id)


def _job_status(job_id, job):
    result = job["orchestrator"].snapshot().to_dict()
    result["job_id"] = job_id
    result["running"] = job["thread"].is_alive()
    return result


@app.route("/api/run", methods=["POST"])
def api_run():
    """Start a pipeline run in the background and return its job id."""
    data = request.get_json(silent=True)
    if not data or not str(data.get("goal", "")).strip():
        return jsonify({"error": "Missing goal"}), 400

    goal = data["goal"].strip()
    language = data.get("language") or None

    orchestrator = Orchestrator(get_collaborators())
    job_id = str(uuid.uuid4())[:8]
    with _jobs_lock:
        _cleanup_jobs()
        if len(_jobs) >= _MAX_JOBS:
            return jsonify({"error": "Too many running jobs"}), 429
        thread = _start(orchestrator.run, goal, language)
        _jobs[job_id] = {"orchestrator": orchestrator, "thread": thread, "created": time.time()}

    logger.info("Started job %s", job_id)
    return jsonify({"job_id": job_id}), 202


@app.route("/api/status/<job_id>")
def api_status(job_id):
    job = _get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404
    return jsonify(_job_status(job_id, job))


@app.route("/api/cancel/<job_id>", methods=["POST"])
def api_cancel(job_id):
    job = _get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404
    job["orchestrator"].stop()
    return jsonify({"job_id": job_id, "cancelled": True})


@app.route("/api/resume/<job_id>", methods=["POST"])
def api_resume(job_id):
    """Re-run the failed step of a job that ended in error."""
    job = _get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404
    if job["thread"].is_alive():
        return jsonify({"error": "Job is still running"}), 409

    orchestrator = job["orchestrator"]
    state = orchestrator.snapshot()
    if state.current_step != Step.ERROR or state.failed_step is None:
        return jsonify({"error": "Job has not failed; nothing to resume"}), 400

    with _jobs_lock:
        job["thread"] = _start(orchestrator.resume)
        job["created"] = time.time()
    return jsonify({"job_id": job_id, "resumed": state.failed_step.value}), 202


@app.route("/api/diffs/<job_id>")
def api_diffs(job_id):
    """Pending diffs of a job as numbered display lines."""
    job = _get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404

    diffs = []
    for d in job["orchestrator"].snapshot().pending_diffs:
        diffs.append({
            "file_path": d.file_path,
            "target_symbol": d.target_symbol,
            "stats": diff_stats(d.diff),
            "lines": [
                {"kind": l.kind, "text": l.text, "old_line": l.old_line, "new_line": l.new_line}
                for l in parse_diff_lines(d.diff)
            ],
        })
    return jsonify({"job_id": job_id, "diffs": diffs})


@app.route("/api/limits")
def api_limits():
    admission = get_collaborators().admission
    metered = admission is not None and admission.store is not None
    return jsonify({
        "metered": metered,
        "providers": {
            name: {"rpm": limits["rpm"], "tpm": limits["tpm"]}
            for name, limits in PROVIDER_LIMITS.items()
        },
    })


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.environ.get("PORT", 5001))
    print(f"StepSmith running at http://localhost:{port}")
    app.run(debug=False, port=port)
