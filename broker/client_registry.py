from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

from broker.errors import ConfigurationError


@dataclass
class ClientInfo:
    client_id: str
    client_name: str
    redirect_uris: list[str]
    created_at: float


class ClientRegistry:
    def __init__(self) -> None:
        self._clients: dict[str, ClientInfo] = {}

    @classmethod
    def from_file(cls, path: str | Path) -> "ClientRegistry":
        """Load clients from a JSON list of ``{client_id, client_name, redirect_uris}``."""
        registry = cls()
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise ConfigurationError(f"Could not read clients file {path}: {error}") from error

        if not isinstance(raw, list):
            raise ConfigurationError("Clients file must contain a JSON list.")
        for entry in raw:
            if not isinstance(entry, dict):
                raise ConfigurationError("Each client entry must be a JSON object.")
            client_id = entry.get("client_id")
            redirect_uris = entry.get("redirect_uris")
            if not isinstance(client_id, str) or not client_id:
                raise ConfigurationError("Each client entry needs a client_id.")
            if not isinstance(redirect_uris, list) or not all(
                isinstance(uri, str) for uri in redirect_uris
            ):
                raise ConfigurationError(f"Client {client_id!r} needs a list of redirect_uris.")
            registry.register(
                client_name=str(entry.get("client_name") or client_id),
                redirect_uris=redirect_uris,
                client_id=client_id,
            )
        return registry

    def register(
        self,
        client_name: str,
        redirect_uris: list[str],
        *,
        client_id: str | None = None,
    ) -> ClientInfo:
        client = ClientInfo(
            client_id=client_id or str(uuid.uuid4()),
            client_name=client_name,
            redirect_uris=list(redirect_uris),
            created_at=time.time(),
        )
        self._clients[client.client_id] = client
        return client

    def get(self, client_id: str) -> ClientInfo | None:
        return self._clients.get(client_id)

    def validate_redirect_uri(self, client_id: str, uri: str) -> bool:
        client = self.get(client_id)
        if client is None:
            return False
        return uri in client.redirect_uris
