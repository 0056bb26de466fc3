# apps/vet_chat_worker/worker_api.py
import os
import shlex
import signal
import subprocess
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Response, status

from common.json_logging import configure_json_logging

log = configure_json_logging("vet-chat-worker-host")

DRAIN_TIMEOUT_S = int(os.getenv("TASKIQ_DRAIN_TIMEOUT_S", "30"))


def build_worker_cmd() -> List[str]:
    """taskiq worker for process_vet_evidence_chat_task (broker: common.broker.vet_chat_broker)."""
    cmd = [
        "taskiq",
        "worker",
        "vet_chat_tasks.vet_chat_tasks:vet_chat_broker",
        "--max-async-tasks", os.getenv("TASKIQ_MAX_ASYNC", "200"),
    ]
    extra = os.getenv("TASKIQ_EXTRA_FLAGS", "")
    if extra:
        cmd.extend(shlex.split(extra))
    return cmd


_worker: Optional[subprocess.Popen] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Uvicorn serves /healthz on :8080 and the taskiq worker runs as a child
    process. SIGTERM is forwarded and the child gets DRAIN_TIMEOUT_S to finish.
    """
    global _worker
    cmd = build_worker_cmd()
    log.info("worker_spawn", extra={"cmd": " ".join(cmd)})
    _worker = subprocess.Popen(cmd)
    try:
        yield
    finally:
        _worker.send_signal(signal.SIGTERM)
        try:
            _worker.wait(timeout=DRAIN_TIMEOUT_S)
        except subprocess.TimeoutExpired:
            log.warning("worker_drain_timeout", extra={"timeout_s": DRAIN_TIMEOUT_S})
            _worker.kill()
        log.info("worker_stopped", extra={"returncode": _worker.returncode})


app = FastAPI(lifespan=lifespan)


@app.get("/healthz", include_in_schema=False)
def health(response: Response):
    if _worker is not None and _worker.poll() is not None:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "worker_exited", "returncode": _worker.returncode}
    return {"status": "ok"}
