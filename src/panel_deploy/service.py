import argparse
import json
import logging
import os
import re
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from panel_deploy.archive import DEFAULT_EXCLUDE_PATTERNS, ArchiveError, build_archive
from panel_deploy.client import PanelClient, PanelError
from panel_deploy.reconcile import OutcomeKind, StateWaiter

EXIT_ENV = 1
EXIT_PANEL = 2
EXIT_ARCHIVE = 3
EXIT_TIMEOUT = 4
EXIT_CONFIG = 5
STOP_TIMEOUT_SECONDS = 30
START_TIMEOUT_SECONDS = 60
SETTLE_DELAY_SECONDS = 5
COMMAND_DELAY_MS = 500

DEFAULT_CONFIG_PATH = "deploy.json"
DEFAULT_LOG_PATH = "logs/deploy.log"
DEFAULT_SAMPLE_CONFIG = {
    "PanelUrl": "https://panel.example.com",
    "ApiKey": "ptlc_xxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx",
    "ServerId": "1a2b3c4d",
    "LogPath": DEFAULT_LOG_PATH,
    "Workspace": ".",
    "Destination": "/",
    "Restart": True,
    "CleanDestination": False,
    "PreservePaths": [],
    "ExcludePatterns": DEFAULT_EXCLUDE_PATTERNS,
    "StopTimeoutSeconds": STOP_TIMEOUT_SECONDS,
    "StartTimeoutSeconds": START_TIMEOUT_SECONDS,
    "PollIntervalSeconds": 1,
    "SettleDelaySeconds": SETTLE_DELAY_SECONDS,
    "CommandDelayMs": COMMAND_DELAY_MS,
    "RequestTimeoutSeconds": 30,
    "Run": "",
    "DryRun": False,
}

REDACTED = "***"


@dataclass
class Settings:
    panel_url: str
    api_key: str
    server_id: str
    log_path: Path
    workspace: Path
    destination: str
    run_block: str
    restart: bool
    clean_destination: bool
    preserve_paths: list[str]
    exclude_patterns: list[str]
    stop_timeout_seconds: float
    start_timeout_seconds: float
    poll_interval_seconds: float
    settle_delay_seconds: float
    command_delay_ms: int
    request_timeout_seconds: float
    dry_run: bool


@dataclass
class DeploymentRecord:
    server: str
    archive: str
    archive_bytes: int
    commands: int
    duration_seconds: float
    timestamp: str
    status: str
    error: str | None = None


@dataclass
class DeployStatus:
    server: str
    running: bool = False
    stage: str | None = None
    last_run_time: str | None = None
    last_deploy_time: str | None = None
    last_duration_seconds: float | None = None
    last_error: str | None = None
    last_status: str = "UNKNOWN"


class DeployError(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class DeployState:
    def __init__(self, server: str) -> None:
        self._lock = threading.Lock()
        self._status = DeployStatus(server=server)
        self._history: list[DeploymentRecord] = []
        self._max_history = 200

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "server": dict(self._status.__dict__),
                "history": [dict(item.__dict__) for item in self._history],
            }

    def try_begin(self) -> bool:
        with self._lock:
            if self._status.running:
                return False
            self._status.running = True
            self._status.stage = None
            self._status.last_run_time = _utc_now_iso()
            return True

    def is_running(self) -> bool:
        with self._lock:
            return self._status.running

    def set_stage(self, stage: str) -> None:
        with self._lock:
            self._status.stage = stage

    def finish(self, record: DeploymentRecord) -> None:
        with self._lock:
            self._status.running = False
            self._status.last_status = record.status
            self._status.last_error = record.error
            self._status.last_duration_seconds = record.duration_seconds
            if record.status == "OK":
                self._status.last_deploy_time = record.timestamp
            self._history.append(record)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history :]


class DeployController:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._dry_run_override = False

    def set_dry_run(self, value: bool) -> None:
        with self._lock:
            self._dry_run_override = value

    def get_dry_run(self) -> bool:
        with self._lock:
            return self._dry_run_override


class SecretFilter(logging.Filter):
    """Replaces registered secrets in every log record."""

    def __init__(self, secrets: list[str]) -> None:
        super().__init__()
        self._secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        for secret in self._secrets:
            message = message.replace(secret, REDACTED)
        record.msg = message
        record.args = None
        return True


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _in_github_actions() -> bool:
    return os.environ.get("GITHUB_ACTIONS") == "true"


def _register_secret(value: str) -> None:
    if value and _in_github_actions():
        print(f"::add-mask::{value}")


def _report_failure(message: str) -> None:
    if _in_github_actions():
        print(f"::error::{message}")


def _load_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8-sig") as f:
        return json.load(f)


def _write_sample_config(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(DEFAULT_SAMPLE_CONFIG, f, ensure_ascii=False, indent=2)


def _config_from_inputs(env: Mapping[str, str]) -> dict[str, Any] | None:
    """Build a config dict from GitHub Actions style ``INPUT_*`` variables."""
    url = env.get("INPUT_URL", "").strip()
    api_key = env.get("INPUT_API_KEY", "").strip()
    server_id = env.get("INPUT_SERVER_ID", "").strip()
    if not (url and api_key and server_id):
        return None
    cfg: dict[str, Any] = {
        "PanelUrl": url,
        "ApiKey": api_key,
        "ServerId": server_id,
        "Workspace": env.get("INPUT_WORKSPACE")
        or env.get("GITHUB_WORKSPACE")
        or os.getcwd(),
        "Run": env.get("INPUT_RUN", ""),
    }
    if env.get("INPUT_DESTINATION"):
        cfg["Destination"] = env["INPUT_DESTINATION"]
    return cfg


def _settings_from_config(cfg: dict[str, Any]) -> Settings:
    def _require_positive(value: float, name: str) -> float:
        if value <= 0:
            raise ValueError(f"{name} must be > 0 (got {value})")
        return value

    def _require_non_negative(value: float, name: str) -> float:
        if value < 0:
            raise ValueError(f"{name} must be >= 0 (got {value})")
        return value

    def _parse_patterns(value: Any, default: list[str]) -> list[str]:
        if value is None:
            return list(default)
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise ValueError(f"Patterns must be list or string (got {value})")
        return [str(v).strip() for v in value if str(v).strip()]

    def _parse_bool(value: Any, default: bool) -> bool:
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        raise ValueError(f"Bool expected (got {value})")

    def _req(key: str) -> str:
        value = str(cfg.get(key, "")).strip()
        if not value:
            raise KeyError(f"Missing config key: {key}")
        return value

    panel_url = _req("PanelUrl")
    if not re.match(r"^https?://", panel_url):
        raise ValueError(f"PanelUrl must start with http:// or https:// (got {panel_url})")

    destination = str(cfg.get("Destination", "/")).strip() or "/"
    if not destination.startswith("/"):
        destination = f"/{destination}"

    return Settings(
        panel_url=panel_url,
        api_key=_req("ApiKey"),
        server_id=_req("ServerId"),
        log_path=Path(cfg.get("LogPath", DEFAULT_LOG_PATH)),
        workspace=Path(cfg.get("Workspace", ".")),
        destination=destination,
        run_block=str(cfg.get("Run") or ""),
        restart=_parse_bool(cfg.get("Restart"), True),
        clean_destination=_parse_bool(cfg.get("CleanDestination"), False),
        preserve_paths=_parse_patterns(cfg.get("PreservePaths"), []),
        exclude_patterns=_parse_patterns(
            cfg.get("ExcludePatterns"), DEFAULT_EXCLUDE_PATTERNS
        ),
        stop_timeout_seconds=_require_positive(
            float(cfg.get("StopTimeoutSeconds", STOP_TIMEOUT_SECONDS)),
            "StopTimeoutSeconds",
        ),
        start_timeout_seconds=_require_positive(
            float(cfg.get("StartTimeoutSeconds", START_TIMEOUT_SECONDS)),
            "StartTimeoutSeconds",
        ),
        poll_interval_seconds=_require_positive(
            float(cfg.get("PollIntervalSeconds", 1)), "PollIntervalSeconds"
        ),
        settle_delay_seconds=_require_non_negative(
            float(cfg.get("SettleDelaySeconds", SETTLE_DELAY_SECONDS)),
            "SettleDelaySeconds",
        ),
        command_delay_ms=int(
            _require_non_negative(
                float(cfg.get("CommandDelayMs", COMMAND_DELAY_MS)), "CommandDelayMs"
            )
        ),
        request_timeout_seconds=_require_positive(
            float(cfg.get("RequestTimeoutSeconds", 30)), "RequestTimeoutSeconds"
        ),
        dry_run=_parse_bool(cfg.get("DryRun"), False),
    )


def validate_config_dict(cfg: dict[str, Any]) -> list[str]:
    try:
        _settings_from_config(cfg)
        return []
    except Exception as exc:
        return [str(exc)]


def redacted_config(cfg: dict[str, Any]) -> dict[str, Any]:
    out = dict(cfg)
    if out.get("ApiKey"):
        out["ApiKey"] = REDACTED
    return out


def parse_commands(block: str) -> list[str]:
    commands = []
    for line in re.split(r"\r?\n", block or ""):
        line = line.strip()
        if not line:
            continue
        m = re.match(r'^"(.*)"$', line) or re.match(r"^'(.*)'$", line)
        commands.append(m.group(1) if m else line)
    return commands


def _setup_logging(log_path: Path, secrets: list[str] | None = None) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    handlers.append(logging.StreamHandler())
    secret_filter = SecretFilter(secrets or [])
    for handler in handlers:
        handler.addFilter(secret_filter)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )


def _remote_join(directory: str, name: str) -> str:
    return f"{directory.rstrip('/')}/{name}"


class DeploySequencer:
    def __init__(
        self,
        settings: Settings,
        client: PanelClient,
        waiter: StateWaiter,
        state: DeployState,
        controller: DeployController,
        archiver: Callable[..., tuple[Path, str]] = build_archive,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.settings = settings
        self.client = client
        self.waiter = waiter
        self.state = state
        self.controller = controller
        self._archiver = archiver
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self.settings.server_id

    def run(self) -> DeploymentRecord:
        """Run the whole pipeline once; the first failing stage ends the run."""
        if not self.state.try_begin():
            raise DeployError(EXIT_ENV, f"deploy already running for {self.name}")

        dry_run = self.settings.dry_run or self.controller.get_dry_run()
        start = time.time()
        summary: dict[str, Any] = {"archive": "", "archive_bytes": 0, "commands": 0}
        try:
            self._run_stages(dry_run, summary)
        except DeployError as exc:
            self._finish(start, summary, "FAILED", exc.message)
            raise
        except ArchiveError as exc:
            self._finish(start, summary, "FAILED", str(exc))
            raise DeployError(EXIT_ARCHIVE, str(exc)) from exc
        except PanelError as exc:
            self._finish(start, summary, "FAILED", str(exc))
            raise DeployError(EXIT_PANEL, str(exc)) from exc
        except Exception as exc:
            self._finish(start, summary, "FAILED", str(exc))
            raise DeployError(EXIT_ENV, str(exc)) from exc
        return self._finish(start, summary, "OK", None)

    def _finish(
        self, start: float, summary: dict[str, Any], status: str, error: str | None
    ) -> DeploymentRecord:
        record = DeploymentRecord(
            server=self.name,
            archive=summary["archive"],
            archive_bytes=summary["archive_bytes"],
            commands=summary["commands"],
            duration_seconds=time.time() - start,
            timestamp=_utc_now_iso(),
            status=status,
            error=error,
        )
        self.state.finish(record)
        if status == "OK":
            logging.info("[%s] OK deploy finished in %.1fs", self.name, record.duration_seconds)
        else:
            logging.error("[%s] FAILED %s", self.name, error)
        return record

    def _stage(self, stage: str, message: str, *args: Any) -> None:
        self.state.set_stage(stage)
        logging.info("[%s] " + message, self.name, *args)

    def _run_stages(self, dry_run: bool, summary: dict[str, Any]) -> None:
        settings = self.settings
        if settings.restart:
            self._transition("stop", "offline", settings.stop_timeout_seconds, dry_run)

        self._stage("archive", "Zipping workspace at: %s", settings.workspace)
        archive_path, archive_name = self._archiver(
            settings.workspace, settings.exclude_patterns
        )
        summary["archive"] = archive_name
        summary["archive_bytes"] = archive_path.stat().st_size
        try:
            if settings.clean_destination:
                self._stage("clean", "Cleaning %s on the server...", settings.destination)
                self._clean_remote_dir(
                    settings.destination, set(settings.preserve_paths), dry_run
                )
            self._upload(archive_path, archive_name, dry_run)
        finally:
            archive_path.unlink(missing_ok=True)

        if settings.restart:
            self._transition("start", "running", settings.start_timeout_seconds, dry_run)

        commands = parse_commands(settings.run_block)
        if commands:
            if settings.restart and settings.settle_delay_seconds > 0:
                self._stage(
                    "settle",
                    "Waiting %ss for the server to settle...",
                    settings.settle_delay_seconds,
                )
                self._sleep(settings.settle_delay_seconds)
            self._send_commands(commands, dry_run)
            summary["commands"] = len(commands)

    def _transition(
        self, signal: str, desired: str, timeout_seconds: float, dry_run: bool
    ) -> None:
        self._stage(signal, "Sending %s signal...", signal)
        if dry_run:
            logging.info(
                "[%s][DRY-RUN] Would send %s and wait for %s", self.name, signal, desired
            )
            return
        self.client.request_transition(signal)

        self._stage(f"wait-{desired}", "Waiting for server to be %s...", desired)
        outcome = self.waiter.wait_for_state(desired, timeout_seconds)
        if outcome.ok:
            return
        code = EXIT_TIMEOUT if outcome.kind is OutcomeKind.TIMED_OUT else EXIT_PANEL
        raise DeployError(code, f"server did not reach {desired}: {outcome.describe()}")

    def _upload(self, archive_path: Path, archive_name: str, dry_run: bool) -> None:
        destination = self.settings.destination
        if dry_run:
            logging.info(
                "[%s][DRY-RUN] Would upload %s to %s, decompress and delete it",
                self.name,
                archive_name,
                destination,
            )
            return

        self._stage("upload", "Requesting signed upload URL from panel...")
        signed_url = self.client.get_upload_url()
        self._stage("upload", "Uploading %s to %s ...", archive_name, destination)
        self.client.upload_file(signed_url, archive_path, archive_name, destination)

        self._stage("decompress", "Decompressing archive on the server...")
        self.client.decompress(archive_name, destination)

        self._stage("cleanup", "Cleaning up uploaded archive on the server...")
        self.client.delete_files([archive_name], destination)

    def _clean_remote_dir(
        self, directory: str, preserve: set[str], dry_run: bool
    ) -> None:
        targets: list[str] = []
        for entry in self.client.list_directory(directory):
            if entry.name in preserve:
                logging.info("[%s] Preserving %s", self.name, _remote_join(directory, entry.name))
                continue
            if entry.is_file:
                targets.append(entry.name)
                continue
            self._clean_remote_dir(_remote_join(directory, entry.name), set(), dry_run)
            targets.append(f"{entry.name}/")

        if not targets:
            return
        if dry_run:
            for target in targets:
                logging.info(
                    "[%s][DRY-RUN] Would delete %s",
                    self.name,
                    _remote_join(directory, target),
                )
            return
        self.client.delete_files(targets, directory)
        logging.info("[%s] Deleted %s entries in %s", self.name, len(targets), directory)

    def _send_commands(self, commands: list[str], dry_run: bool) -> None:
        self._stage("commands", "Executing post-deploy commands...")
        delay = self.settings.command_delay_ms / 1000.0
        for cmd in commands:
            if dry_run:
                logging.info("[%s][DRY-RUN] Would send command: %s", self.name, cmd)
                continue
            logging.info("[%s] Sending command: %s", self.name, cmd)
            self.client.send_command(cmd)
            self._sleep(delay)
        logging.info("[%s] All commands sent", self.name)


def create_runtime(
    settings: Settings,
) -> tuple[DeployState, DeployController, DeploySequencer]:
    state = DeployState(settings.server_id)
    controller = DeployController()
    client = PanelClient(
        settings.panel_url,
        settings.api_key,
        settings.server_id,
        timeout_seconds=settings.request_timeout_seconds,
    )
    waiter = StateWaiter(
        client,
        poll_interval_seconds=settings.poll_interval_seconds,
        name=settings.server_id,
    )
    sequencer = DeploySequencer(
        settings=settings,
        client=client,
        waiter=waiter,
        state=state,
        controller=controller,
    )
    return state, controller, sequencer


def run(settings: Settings) -> DeploymentRecord:
    _, _, sequencer = create_runtime(settings)
    logging.info("START")
    return sequencer.run()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Deploy a workspace to a panel-managed game server"
    )
    parser.add_argument(
        "--config", default=DEFAULT_CONFIG_PATH, help="Path to config JSON"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not touch the server, only log planned actions",
    )
    parser.add_argument(
        "--run",
        default=None,
        help="Console commands to send after start (newline separated)",
    )
    parser.add_argument(
        "--no-restart",
        action="store_true",
        help="Upload without stopping and starting the server",
    )
    parser.add_argument(
        "--web",
        action="store_true",
        help="Start web console instead of deploying once",
    )
    parser.add_argument(
        "--web-host",
        default="127.0.0.1",
        help="Web console host",
    )
    parser.add_argument(
        "--web-port",
        type=int,
        default=8787,
        help="Web console port",
    )
    args = parser.parse_args()

    config_path = Path(args.config)
    try:
        if config_path.exists():
            cfg = _load_config(config_path)
        else:
            cfg = _config_from_inputs(os.environ)
            if cfg is None:
                raise FileNotFoundError(config_path)
        settings = _settings_from_config(cfg)
    except FileNotFoundError:
        _write_sample_config(config_path)
        print(f"ERROR code={EXIT_CONFIG} config created at: {config_path}")
        print("Please edit the config and run again.")
        sys.exit(EXIT_CONFIG)
    except json.JSONDecodeError as exc:
        print(f"ERROR code={EXIT_CONFIG} config JSON invalid: {exc}")
        sys.exit(EXIT_CONFIG)
    except (KeyError, ValueError) as exc:
        print(f"ERROR code={EXIT_CONFIG} config validation failed: {exc}")
        sys.exit(EXIT_CONFIG)

    if args.dry_run:
        settings.dry_run = True
    if args.run is not None:
        settings.run_block = args.run
    if args.no_restart:
        settings.restart = False

    _register_secret(settings.api_key)
    _setup_logging(settings.log_path, [settings.api_key])
    if args.web:
        from panel_deploy.webapp import WebRuntime, run_web

        runtime = WebRuntime(settings=settings, config_path=config_path)
        run_web(runtime=runtime, host=args.web_host, port=args.web_port)
        return

    try:
        run(settings)
    except DeployError as exc:
        _report_failure(exc.message)
        print(f"ERROR code={exc.code} {exc.message}")
        sys.exit(exc.code)
    except KeyboardInterrupt:
        logging.info("STOP")
        sys.exit(EXIT_ENV)


if __name__ == "__main__":
    main()
