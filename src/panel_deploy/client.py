import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30


class PanelError(Exception):
    """Base error for anything the panel refuses or fails to answer."""


class TransportError(PanelError):
    """Network, HTTP or payload failure on a panel call."""


class CredentialUnavailable(PanelError):
    """The panel did not hand out a usable push-channel credential."""


@dataclass(frozen=True)
class PushCredential:
    token: str
    socket: str


@dataclass(frozen=True)
class RemoteEntry:
    name: str
    is_file: bool


def normalise_url(url: str) -> str:
    return url.rstrip("/")


def _pick(payload: Any, *paths: tuple[str, ...]) -> Any:
    for path in paths:
        value = payload
        for key in path:
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(key)
        if value:
            return value
    return None


class PanelClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        server_id: str,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        http: requests.Session | None = None,
    ) -> None:
        self.base_url = normalise_url(base_url)
        self.server_id = server_id
        self.timeout_seconds = timeout_seconds
        self._http = http or requests.Session()
        self._http.headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
            }
        )

    @property
    def origin(self) -> str:
        return self.base_url

    def _url(self, suffix: str) -> str:
        return f"{self.base_url}/api/client/servers/{self.server_id}/{suffix}"

    def _request(self, method: str, suffix: str, **kwargs: Any) -> requests.Response:
        try:
            response = self._http.request(
                method, self._url(suffix), timeout=self.timeout_seconds, **kwargs
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"{method} {suffix} failed: {exc}") from exc
        return response

    def _json(self, method: str, suffix: str, **kwargs: Any) -> Any:
        response = self._request(method, suffix, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"{method} {suffix} returned invalid JSON") from exc

    def get_status(self) -> str:
        payload = self._json("GET", "resources")
        state = _pick(payload, ("attributes", "current_state"), ("current_state",))
        if not state:
            raise TransportError("resources response missing current_state")
        return str(state).lower()

    def get_push_credential(self) -> PushCredential:
        try:
            payload = self._json("GET", "websocket")
        except TransportError as exc:
            raise CredentialUnavailable(str(exc)) from exc
        for shape in (("data",), ("attributes",), ()):
            token = _pick(payload, (*shape, "token"))
            socket = _pick(payload, (*shape, "socket"))
            if token and socket:
                return PushCredential(token=str(token), socket=str(socket))
        raise CredentialUnavailable("websocket response missing token or socket")

    def request_transition(self, signal: str) -> None:
        logging.debug("[%s] power signal %s", self.server_id, signal)
        self._request("POST", "power", json={"signal": signal})

    def get_upload_url(self) -> str:
        payload = self._json("GET", "files/upload")
        url = _pick(payload, ("attributes", "url"), ("url",))
        if not url:
            raise PanelError("upload response missing signed url")
        return str(url)

    def upload_file(
        self, signed_url: str, path: Path, name: str, directory: str = "/"
    ) -> None:
        try:
            with path.open("rb") as f:
                response = requests.post(
                    signed_url,
                    files={"files": (name, f)},
                    data={"directory": directory},
                )
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"upload of {name} failed: {exc}") from exc

    def decompress(self, name: str, root: str = "/") -> None:
        self._request("POST", "files/decompress", json={"root": root, "file": name})

    def delete_files(self, names: list[str], root: str = "/") -> None:
        if not names:
            return
        self._request("POST", "files/delete", json={"root": root, "files": names})

    def list_directory(self, directory: str = "/") -> list[RemoteEntry]:
        payload = self._json("GET", "files/list", params={"directory": directory})
        entries: list[RemoteEntry] = []
        for item in (payload or {}).get("data", []):
            attrs = item.get("attributes", item)
            name = attrs.get("name")
            if not name:
                continue
            entries.append(RemoteEntry(name=name, is_file=bool(attrs.get("is_file"))))
        return entries

    def send_command(self, command: str) -> None:
        self._request("POST", "command", json={"command": command})
