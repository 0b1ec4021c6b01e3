import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from panel_deploy.service import (
    DeployController,
    DeployError,
    DeployState,
    DeploySequencer,
    Settings,
    _load_config,
    create_runtime,
    redacted_config,
    validate_config_dict,
)


def _tail_lines(path: Path, max_lines: int) -> list[str]:
    if max_lines <= 0:
        return []
    try:
        with path.open("rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            data = b""
            while size > 0 and data.count(b"\n") <= max_lines:
                step = min(4096, size)
                size -= step
                f.seek(size)
                data = f.read(step) + data
    except FileNotFoundError:
        return []
    return [
        line.decode("utf-8", errors="replace")
        for line in data.splitlines()[-max_lines:]
    ]


def _match_log_line(line: str, level: str | None) -> bool:
    return not level or f" {level.upper()} " in line


class WebRuntime:
    def __init__(
        self,
        settings: Settings,
        config_path: Path,
        runtime: tuple[DeployState, DeployController, DeploySequencer] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self.config_path = config_path
        self.settings = settings
        self.state, self.controller, self.sequencer = runtime or create_runtime(settings)
        self.thread: threading.Thread | None = None

    def start_deploy(self) -> bool:
        with self._lock:
            busy = self.thread is not None and self.thread.is_alive()
            if busy or self.state.is_running():
                return False
            thread = threading.Thread(target=self._deploy, name="deploy", daemon=True)
            self.thread = thread
            thread.start()
            return True

    def _deploy(self) -> None:
        try:
            self.sequencer.run()
        except DeployError as exc:
            logging.error("[%s] ERROR code=%s %s", self.settings.server_id, exc.code, exc.message)

    def wait(self, timeout: float | None = None) -> None:
        thread = self.thread
        if thread is not None:
            thread.join(timeout)

    def snapshot(self) -> dict[str, Any]:
        return self.state.snapshot()


def create_app(runtime: WebRuntime) -> FastAPI:
    app = FastAPI()

    @app.get("/api/status")
    def status() -> JSONResponse:
        snapshot = runtime.snapshot()
        payload = {
            "dry_run": runtime.settings.dry_run or runtime.controller.get_dry_run(),
            "config_path": str(runtime.config_path),
            "server": snapshot["server"],
        }
        return JSONResponse(payload)

    @app.get("/api/history")
    def history() -> JSONResponse:
        return JSONResponse({"items": runtime.snapshot()["history"]})

    @app.get("/api/config")
    def config() -> JSONResponse:
        try:
            cfg = _load_config(runtime.config_path)
        except FileNotFoundError as exc:
            return JSONResponse({"ok": False, "error": str(exc)}, status_code=404)
        return JSONResponse(redacted_config(cfg))

    @app.post("/api/validate")
    async def validate(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError as exc:
            return JSONResponse({"ok": False, "errors": [str(exc)]}, status_code=400)
        errors = validate_config_dict(body)
        return JSONResponse({"ok": not errors, "errors": errors})

    @app.post("/api/deploy")
    def deploy() -> JSONResponse:
        if not runtime.start_deploy():
            return JSONResponse(
                {"ok": False, "error": "deploy already running"}, status_code=409
            )
        return JSONResponse({"ok": True}, status_code=202)

    @app.post("/api/dry-run")
    async def dry_run(request: Request) -> JSONResponse:
        body = await request.json()
        enabled = bool(body.get("enabled", False))
        runtime.controller.set_dry_run(enabled)
        return JSONResponse({"ok": True, "dry_run": enabled})

    @app.get("/api/logs/stream")
    async def logs_stream(level: str | None = None, tail: int = 200) -> StreamingResponse:
        log_path = runtime.settings.log_path

        async def event_stream() -> AsyncIterator[str]:
            for line in _tail_lines(log_path, tail):
                if _match_log_line(line, level):
                    yield f"data: {line}\n\n"

            try:
                with log_path.open("r", encoding="utf-8", errors="replace") as f:
                    f.seek(0, os.SEEK_END)
                    while True:
                        line = f.readline()
                        if not line:
                            await asyncio.sleep(0.5)
                            continue
                        line = line.rstrip("\n")
                        if _match_log_line(line, level):
                            yield f"data: {line}\n\n"
            except FileNotFoundError:
                return

        return StreamingResponse(event_stream(), media_type="text/event-stream")

    return app


def run_web(runtime: WebRuntime, host: str, port: int) -> None:
    import uvicorn

    app = create_app(runtime)
    uvicorn.run(app, host=host, port=port, log_level="info")
