"""FastAPI integration entrypoint."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Annotated, Any, Iterable

from fastapi import Depends, FastAPI, HTTPException, Query, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from .adb import DEFAULT_WIRELESS_PORT, ADBClient
from .config import Settings, load_settings
from .devices import Device
from .errors import CommandOutputError, OutputError, classify_output
from .files import FileBrowser
from .listing import FileEntry, ListingFormat, SortType
from .log import SERVICE_NAME, configure_logging, log_event
from .poller import DevicePoller
from .session import DeviceSession
from .terminal import Terminal

CONFIG_ENV_VAR = "ADBFM_CONFIG_PATH"
CONFIG_SEARCH_PATHS_ENV_VAR = "ADBFM_CONFIG_SEARCH_PATHS"
DEFAULT_CONFIG_FILENAME = "config.yaml"
API_TOKEN_ENV_VAR = "ADBFM_API_TOKEN"  # noqa: S105 - env var name, not a secret
DEFAULT_CONFIG_SEARCH_PATHS: tuple[Path, ...] = (
    Path("config.yaml"),
    Path("config/config.yaml"),
    Path(__file__).resolve().parent / DEFAULT_CONFIG_FILENAME,
)

_ERROR_STATUS: dict[OutputError, int] = {
    OutputError.NO_DEVICE: 409,
    OutputError.PERMISSION_DENIED: 403,
    OutputError.READ_ONLY: 403,
    OutputError.NO_SUCH_FILE: 404,
    OutputError.NOT_A_DIRECTORY: 404,
    OutputError.ALREADY_EXISTS: 409,
    OutputError.NOT_EMPTY: 409,
}

auth_scheme = HTTPBearer(auto_error=False)
AuthCredentials = Annotated[HTTPAuthorizationCredentials | None, Security(auth_scheme)]


class SelectRequest(BaseModel):
    device_id: str


class ConnectRequest(BaseModel):
    ip: str
    port: str = DEFAULT_WIRELESS_PORT


class PairRequest(BaseModel):
    ip: str
    pairing_port: str
    code: str
    port: str = DEFAULT_WIRELESS_PORT


class ExecRequest(BaseModel):
    command: str


class PathRequest(BaseModel):
    path: str


class WriteRequest(BaseModel):
    path: str
    content: str = ""


class TransferRequest(BaseModel):
    local_path: str
    remote_path: str


def create_app(
    *,
    config_path: str | None = None,
    adb_client: ADBClient | None = None,
    api_token: str | None = None,
    config_search_paths: Iterable[str | os.PathLike[str]] | None = None,
    start_polling: bool = True,
) -> FastAPI:
    """Instantiate the FastAPI application."""

    configure_logging()

    state: dict[str, Any] = {
        "settings": None,
        "adb": adb_client,
        "config_path": config_path,
        "poller": None,
        "browser": None,
        "api_token": api_token or os.getenv(API_TOKEN_ENV_VAR),
        "config_search_paths": tuple(config_search_paths or ()),
    }

    async def _watch(poller: DevicePoller) -> None:
        subscription = await poller.subscribe()
        try:
            async for devices in subscription:
                log_event("devices.published", count=len(devices), level=logging.DEBUG)
        finally:
            await subscription.aclose()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via tests
        resolved_path = _resolve_config_path(state["config_path"], state["config_search_paths"])
        try:
            settings = load_settings(resolved_path)
        except Exception:
            log_event("config.load_failed", path=str(resolved_path))
            raise

        state["settings"] = settings
        state["config_path"] = str(resolved_path)
        log_event("config.loaded", path=str(resolved_path))

        poller = _build_poller(settings)
        state["poller"] = poller
        state["browser"] = FileBrowser(poller, listing_format=settings.listing_format)
        watcher = asyncio.create_task(_watch(poller)) if start_polling else None
        try:
            yield
        finally:
            if watcher is not None:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
            await poller.stop()
            state["settings"] = None
            state["poller"] = None
            state["browser"] = None
            log_event("config.unloaded")

    app = FastAPI(
        title="adbfm - Android device file manager",
        description="Browse and transfer files on devices reachable through adb.",
        version="1.0.0",
        lifespan=_lifespan,
    )

    def _build_poller(settings: Settings) -> DevicePoller:
        adb = state.get("adb")
        if adb is None:
            adb = ADBClient(
                executable=settings.adb_path,
                android_home=settings.android_home,
                terminal=Terminal(command_timeout=settings.command_timeout),
            )
            state["adb"] = adb
        polling = settings.polling
        return DevicePoller(
            adb,
            DeviceSession(auto_select=settings.auto_select),
            max_delay_ms=polling.max_delay_ms,
            fast_delay_ms=polling.fast_delay_ms,
            backoff=polling.backoff,
        )

    def _require_poller() -> DevicePoller:
        poller = state.get("poller")
        if poller is None:
            raise HTTPException(status_code=503, detail={"message": "Service not initialized"})
        return poller

    def _require_browser() -> FileBrowser:
        browser = state.get("browser")
        if browser is None:
            raise HTTPException(status_code=503, detail={"message": "Service not initialized"})
        return browser

    async def _authorize(credentials: AuthCredentials) -> None:
        token = state.get("api_token")
        if token is None:
            return
        if credentials is None or credentials.credentials != token:
            raise HTTPException(status_code=401, detail={"message": "Invalid or missing API token"})

    def _device_payload(poller: DevicePoller) -> dict[str, Any]:
        current = poller.session.current()
        return {
            "service": SERVICE_NAME,
            "current": _serialize_device(current) if current else None,
            "devices": [_serialize_device(device) for device in poller.devices],
            "polling": poller.running,
            "delay_ms": poller.delay,
        }

    @app.get("/")
    async def root() -> dict[str, Any]:
        settings = state.get("settings")
        return {
            "service": SERVICE_NAME,
            "version": app.version,
            "config_path": state.get("config_path"),
            "adb_path": settings.adb_path if settings else None,
            "listing_format": settings.listing_format.value if settings else None,
            "auth_enabled": bool(state.get("api_token")),
        }

    @app.get("/devices")
    async def devices() -> dict[str, Any]:
        return _device_payload(_require_poller())

    @app.post("/devices/refresh")
    async def refresh_devices() -> dict[str, Any]:
        poller = _require_poller()
        try:
            await poller.poll_once()
        except Exception as exc:  # noqa: BLE001
            log_event("poll.failed", level=logging.WARNING, reason=str(exc))
        return _device_payload(poller)

    @app.post("/devices/select")
    async def select_device(
        request: SelectRequest, _: None = Depends(_authorize)
    ) -> dict[str, Any]:
        poller = _require_poller()
        device = poller.find(request.device_id)
        if device is None:
            raise HTTPException(
                status_code=404,
                detail={"message": f"Device {request.device_id} is not attached"},
            )
        poller.select(device)
        return _device_payload(poller)

    @app.post("/devices/disconnect")
    async def disconnect_device(_: None = Depends(_authorize)) -> dict[str, Any]:
        poller = _require_poller()
        poller.disconnect()
        return _device_payload(poller)

    @app.post("/wifi/connect")
    async def wifi_connect(request: ConnectRequest, _: None = Depends(_authorize)) -> dict[str, Any]:
        poller = _require_poller()
        wifi_state = await poller.connect(request.ip, request.port)
        log_event("wifi.connect", ip=request.ip, port=request.port)
        return {"service": SERVICE_NAME, "wifi_state": asdict(wifi_state)}

    @app.post("/wifi/pair")
    async def wifi_pair(request: PairRequest, _: None = Depends(_authorize)) -> dict[str, Any]:
        poller = _require_poller()
        wifi_state = await poller.pair_and_connect(
            request.ip,
            request.port,
            pairing_port=request.pairing_port,
            pairing_code=request.code,
        )
        log_event("wifi.pair", ip=request.ip, paired=wifi_state is not None)
        return {
            "service": SERVICE_NAME,
            "paired": wifi_state is not None,
            "wifi_state": asdict(wifi_state) if wifi_state else None,
        }

    @app.get("/avds")
    async def avds() -> dict[str, Any]:
        poller = _require_poller()
        names = [avd.name for avd in await poller.list_avds()]
        return {"service": SERVICE_NAME, "avds": names}

    @app.post("/exec")
    async def exec_command(request: ExecRequest, _: None = Depends(_authorize)) -> dict[str, Any]:
        poller = _require_poller()
        try:
            # Host shell syntax is quoted away; the device shell still interprets it.
            command = shlex.join(shlex.split(request.command))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail={"message": str(exc)}) from exc
        lines = await poller.exec(command)
        kind = classify_output(lines)
        log_event("exec.completed", command=request.command, error=kind.value if kind else None)
        return {
            "service": SERVICE_NAME,
            "lines": lines,
            "error": kind.value if kind else None,
        }

    @app.get("/files")
    async def list_files(
        path: str = "/",
        listing_format: Annotated[ListingFormat | None, Query(alias="format")] = None,
        sort: SortType | None = None,
        _: None = Depends(_authorize),
    ) -> dict[str, Any]:
        browser = _require_browser()
        try:
            entries = await browser.list(path, listing_format=listing_format, sort=sort)
        except CommandOutputError as exc:
            raise _http_error(exc) from exc
        return {"service": SERVICE_NAME, "path": path, "entries": _serialize_entries(entries)}

    @app.get("/files/search")
    async def search_files(
        path: str, query: str, _: None = Depends(_authorize)
    ) -> dict[str, Any]:
        browser = _require_browser()
        try:
            entries = await browser.search(path, query)
        except CommandOutputError as exc:
            raise _http_error(exc) from exc
        return {"service": SERVICE_NAME, "path": path, "entries": _serialize_entries(entries)}

    @app.post("/files/mkdir")
    async def make_directory(request: PathRequest, _: None = Depends(_authorize)) -> dict[str, Any]:
        browser = _require_browser()
        try:
            await browser.mkdir(request.path)
        except CommandOutputError as exc:
            raise _http_error(exc) from exc
        return {"service": SERVICE_NAME, "path": request.path, "created": True}

    @app.post("/files/write")
    async def write_file(request: WriteRequest, _: None = Depends(_authorize)) -> dict[str, Any]:
        browser = _require_browser()
        try:
            await browser.write_text(request.path, request.content)
        except CommandOutputError as exc:
            raise _http_error(exc) from exc
        return {"service": SERVICE_NAME, "path": request.path, "written": True}

    @app.delete("/files")
    async def delete_file(path: str, _: None = Depends(_authorize)) -> dict[str, Any]:
        browser = _require_browser()
        try:
            await browser.delete(path)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail={"message": str(exc)}) from exc
        except CommandOutputError as exc:
            raise _http_error(exc) from exc
        return {"service": SERVICE_NAME, "path": path, "deleted": True}

    @app.post("/files/push")
    async def push_file(request: TransferRequest, _: None = Depends(_authorize)) -> dict[str, Any]:
        browser = _require_browser()
        try:
            lines = await browser.push(request.local_path, request.remote_path)
        except CommandOutputError as exc:
            raise _http_error(exc) from exc
        return {"service": SERVICE_NAME, "lines": lines}

    @app.post("/files/pull")
    async def pull_file(request: TransferRequest, _: None = Depends(_authorize)) -> dict[str, Any]:
        browser = _require_browser()
        try:
            lines = await browser.pull(request.remote_path, request.local_path)
        except CommandOutputError as exc:
            raise _http_error(exc) from exc
        return {"service": SERVICE_NAME, "lines": lines}

    return app


def _http_error(exc: CommandOutputError) -> HTTPException:
    log_event(f"{exc.action}.failed", reason=exc.kind.value)
    return HTTPException(
        status_code=_ERROR_STATUS.get(exc.kind, 502),
        detail={"message": str(exc), "error": exc.kind.value},
    )


def _serialize_device(device: Device) -> dict[str, Any]:
    return {
        "device_id": device.device_id,
        "emulator": device.is_emulator(),
        "wifi_state": asdict(device.wifi_state),
    }


def _serialize_entries(entries: list[FileEntry]) -> list[dict[str, Any]]:
    return [asdict(entry) for entry in entries]


def _resolve_config_path(
    override: str | None = None,
    extra_search_paths: Iterable[str | os.PathLike[str]] | None = None,
) -> Path:
    candidate = override or os.getenv(CONFIG_ENV_VAR)
    if candidate:
        path = _normalize_path(candidate)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found at {path}")
        return path

    search_candidates: list[Path] = []
    env_search = os.getenv(CONFIG_SEARCH_PATHS_ENV_VAR)
    if env_search:
        for raw in env_search.split(os.pathsep):
            cleaned = raw.strip()
            if cleaned:
                search_candidates.append(Path(cleaned))

    if extra_search_paths:
        for configured in extra_search_paths:
            search_candidates.append(Path(str(configured)))

    search_candidates.extend(DEFAULT_CONFIG_SEARCH_PATHS)

    evaluated_paths: list[Path] = []
    for candidate_path in search_candidates:
        path = _normalize_path(candidate_path)
        evaluated_paths.append(path)
        if path.exists():
            return path

    searched = ", ".join(str(p) for p in evaluated_paths)
    raise FileNotFoundError(
        (
            "Unable to locate configuration file. Set "
            f"{CONFIG_ENV_VAR} or place config.yaml in one of: {searched}"
        )
    )


def _normalize_path(candidate: str | os.PathLike[str]) -> Path:
    path = Path(candidate).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path
