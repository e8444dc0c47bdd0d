import json
import logging
import ssl
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import httpx

from pve_provisioner.clients.http import RetryPolicy, request_with_retry
from pve_provisioner.config import Settings
from pve_provisioner.errors import APIError, AuthError, LocalIOError
from pve_provisioner.models import NetworkInterface


logger = logging.getLogger(__name__)

REDACTED = "***"


def redact(text: str, secrets: Iterable[str | None]) -> str:
    """Replace every exact occurrence of each secret with a mask."""
    variants: set[str] = set()
    for secret in secrets:
        if not secret:
            continue
        variants.add(secret)
        # the same value as it appears inside a JSON string literal
        variants.add(json.dumps(secret)[1:-1])
    for value in sorted(variants, key=len, reverse=True):
        text = text.replace(value, REDACTED)
    return text


@dataclass(frozen=True)
class ProxmoxSession:
    base_url: str
    verify: bool | str = True
    ticket: str | None = None
    csrf_token: str | None = None
    token_id: str | None = None
    token_secret: str | None = None
    password: str | None = None

    @property
    def uses_api_token(self) -> bool:
        return bool(self.token_id and self.token_secret)

    def auth_headers(self) -> dict[str, str]:
        if self.uses_api_token:
            return {"Authorization": f"PVEAPIToken={self.token_id}={self.token_secret}"}
        headers: dict[str, str] = {}
        if self.ticket:
            headers["Cookie"] = f"PVEAuthCookie={self.ticket}"
        if self.csrf_token:
            headers["CSRFPreventionToken"] = self.csrf_token
        return headers

    def secrets(self) -> list[str]:
        return [
            value
            for value in (self.password, self.token_secret, self.ticket, self.csrf_token)
            if value
        ]


def _ssl_verify(verify: bool | str) -> bool | ssl.SSLContext:
    if isinstance(verify, str):
        try:
            return ssl.create_default_context(cafile=verify)
        except OSError as exc:
            raise LocalIOError(f"unable to load CA bundle {verify}: {exc}") from exc
    return verify


class ProxmoxClient:
    def __init__(
        self,
        session: ProxmoxSession,
        retry: RetryPolicy,
        *,
        timeout: float = 30.0,
        debug: bool = False,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if session.verify is False:
            logger.warning(
                "TLS certificate validation disabled (insecure mode). Use only in dev environments."
            )
        self.session = session
        self.retry = retry
        self.debug = debug
        self.sleep = sleep
        self.client = httpx.Client(
            base_url=session.base_url.rstrip("/"),
            verify=_ssl_verify(session.verify),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ProxmoxClient":
        verify: bool | str = True
        if settings.insecure:
            verify = False
        elif settings.ca_cert:
            verify = settings.ca_cert
        session = ProxmoxSession(
            base_url=settings.api_url,
            verify=verify,
            token_id=settings.token_id if settings.uses_api_token else None,
            token_secret=settings.token_secret if settings.uses_api_token else None,
        )
        retry = RetryPolicy(
            settings.retry_attempts,
            settings.backoff_initial_sec,
            settings.backoff_max_sec,
        )
        client = cls(
            session,
            retry,
            timeout=settings.request_timeout_sec,
            debug=settings.debug,
            transport=transport,
            sleep=sleep,
        )
        if session.uses_api_token:
            logger.info("using API token %s", settings.token_id)
        else:
            if not settings.password:
                raise AuthError("password is required when no API token is configured")
            client.login(settings.user, settings.password)
        return client

    def close(self) -> None:
        self.client.close()

    def login(self, user: str, password: str) -> None:
        logger.info("authenticating as %s", user)
        params = {"username": user, "password": password}
        response = request_with_retry(
            self.client,
            "POST",
            "/access/ticket",
            self.retry,
            sleep=self.sleep,
            data=params,
        )
        payload = self._decode(response, "authenticate")
        data = payload.get("data") or {}
        ticket = data.get("ticket") if isinstance(data, dict) else None
        csrf_token = data.get("CSRFPreventionToken") if isinstance(data, dict) else None
        self._log_exchange(
            "POST", "/access/ticket", params, response, extra=(password, ticket, csrf_token)
        )
        if not ticket or not csrf_token:
            raise AuthError(
                "authentication failed: unable to retrieve ticket or CSRF prevention token"
            )
        self.session = replace(
            self.session, ticket=ticket, csrf_token=csrf_token, password=password
        )
        logger.info("authentication successful")

    def call(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        files: dict[str, Any] | None = None,
        action: str | None = None,
    ) -> Any:
        """Issue an authenticated request and return the envelope's ``data``."""
        action = action or f"{method} {path}"
        kwargs: dict[str, Any] = {"headers": self.session.auth_headers()}
        if params:
            if method in {"GET", "DELETE"}:
                kwargs["params"] = params
            else:
                kwargs["data"] = params
        if files:
            kwargs["files"] = files
        response = request_with_retry(
            self.client, method, path, self.retry, sleep=self.sleep, **kwargs
        )
        self._log_exchange(method, path, params, response)
        payload = self._decode(response, action)

        errors = payload.get("errors")
        if errors:
            raise APIError(action, errors, response.status_code)
        if response.is_error:
            details = payload.get("message") or response.reason_phrase or response.text
            raise APIError(action, details, response.status_code)
        return payload.get("data")

    def _decode(self, response: httpx.Response, action: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            body = (response.text or "").strip()
            detail = body[:240] if body else response.reason_phrase
            raise APIError(action, f"invalid JSON response: {detail}", response.status_code)
        if not isinstance(payload, dict):
            raise APIError(action, f"unexpected response envelope: {payload!r}", response.status_code)
        return payload

    def _log_exchange(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        response: httpx.Response,
        extra: Iterable[str | None] = (),
    ) -> None:
        if not self.debug:
            return
        secrets = [*self.session.secrets(), *extra]
        shown = json.dumps(params or {}, default=str, sort_keys=True)
        logger.debug("API request: %s %s %s", method, path, redact(shown, secrets))
        logger.debug(
            "API response: HTTP %s %s",
            response.status_code,
            redact(response.text, secrets),
        )

    # VM lifecycle

    def create_vm(
        self,
        node: str,
        vmid: int,
        name: str,
        *,
        cores: int,
        memory: int,
        interfaces: list[NetworkInterface],
        scsihw: str = "virtio-scsi-pci",
    ) -> Any:
        params: dict[str, Any] = {
            "vmid": vmid,
            "name": name,
            "cores": cores,
            "memory": memory,
            "scsihw": scsihw,
        }
        for iface in interfaces:
            params[iface.key] = iface.to_param()
        return self.call("POST", f"/nodes/{node}/qemu", params, action="create VM")

    def update_config(
        self, node: str, vmid: int, params: dict[str, Any], *, action: str
    ) -> Any:
        return self.call(
            "POST", f"/nodes/{node}/qemu/{vmid}/config", params, action=action
        )

    def get_config(self, node: str, vmid: int) -> dict[str, Any]:
        data = self.call(
            "GET", f"/nodes/{node}/qemu/{vmid}/config", action="read VM config"
        )
        return data or {}

    def convert_to_template(self, node: str, vmid: int) -> Any:
        return self.call(
            "POST",
            f"/nodes/{node}/qemu/{vmid}/template",
            action="convert VM to a template",
        )

    def vm_status(self, node: str, vmid: int) -> dict[str, Any]:
        data = self.call(
            "GET",
            f"/nodes/{node}/qemu/{vmid}/status/current",
            action="read VM status",
        )
        return data or {}

    def stop_vm(self, node: str, vmid: int) -> Any:
        return self.call(
            "POST", f"/nodes/{node}/qemu/{vmid}/status/stop", action="stop the VM"
        )

    def delete_vm(self, node: str, vmid: int) -> Any:
        return self.call("DELETE", f"/nodes/{node}/qemu/{vmid}", action="delete the VM")

    def next_id(self, candidate: int) -> int | None:
        try:
            data = self.call(
                "GET",
                "/cluster/nextid",
                {"vmid": candidate},
                action="query next VM id",
            )
        except APIError as exc:
            # the endpoint answers 400 when the candidate id is taken
            if exc.status_code == 400:
                return None
            raise
        if data in (None, ""):
            return None
        return int(data)

    def clone_vm(self, node: str, template_id: int, newid: int, name: str) -> Any:
        return self.call(
            "POST",
            f"/nodes/{node}/qemu/{template_id}/clone",
            {"newid": newid, "name": name},
            action="clone the VM",
        )

    def resize_disk(self, node: str, vmid: int, disk: str, size: str) -> Any:
        return self.call(
            "PUT",
            f"/nodes/{node}/qemu/{vmid}/resize",
            {"disk": disk, "size": size},
            action="resize the disk",
        )

    def task_status(self, node: str, upid: str) -> dict[str, Any]:
        data = self.call(
            "GET", f"/nodes/{node}/tasks/{upid}/status", action="read task status"
        )
        return data or {}

    # Storage

    def upload_iso(self, node: str, storage: str, path: str) -> Any:
        local = Path(path)
        with local.open("rb") as fh:
            return self.call(
                "POST",
                f"/nodes/{node}/storage/{storage}/upload",
                {"content": "iso"},
                files={"filename": (local.name, fh, "application/octet-stream")},
                action="upload ISO",
            )

    def delete_volume(self, node: str, storage: str, volid: str) -> Any:
        return self.call(
            "DELETE",
            f"/nodes/{node}/storage/{storage}/content/{volid}",
            action="delete ISO",
        )
