"""Persistence for saved servers and their passwords."""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List

log = logging.getLogger("cbzshelf")


@dataclass
class CredentialState:
    servers: List[str] = field(default_factory=list)
    passwords: Dict[str, str] = field(default_factory=dict)

    def password_for(self, server_url):
        return self.passwords.get(server_url) or None

    def with_server(self, server_url, password=None):
        servers = list(self.servers)
        if server_url not in servers:
            servers.append(server_url)
        passwords = dict(self.passwords)
        if password:
            passwords[server_url] = password
        return CredentialState(servers, passwords)

    def without_server(self, server_url):
        servers = [s for s in self.servers if s != server_url]
        passwords = {k: v for k, v in self.passwords.items() if k != server_url}
        return CredentialState(servers, passwords)

    def to_dict(self):
        return {"servers": list(self.servers), "passwords": dict(self.passwords)}

    @classmethod
    def from_dict(cls, data):
        servers = [s for s in data.get("servers", []) if isinstance(s, str)]
        passwords = {
            k: v for k, v in (data.get("passwords") or {}).items()
            if isinstance(k, str) and isinstance(v, str)
        }
        return cls(servers, passwords)


class CredentialStore:
    """Interface: ``load()`` returns a CredentialState, ``save(state)`` persists it."""

    def load(self):
        raise NotImplementedError

    def save(self, state):
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):

    def __init__(self, state=None):
        self._data = (state or CredentialState()).to_dict()

    def load(self):
        return CredentialState.from_dict(self._data)

    def save(self, state):
        self._data = state.to_dict()


class JsonCredentialStore(CredentialStore):
    """Keeps state in a JSON file, rewritten atomically on every save."""

    def __init__(self, path):
        self.path = path

    def load(self):
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return CredentialState()
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Ignoring unreadable %s: %s", self.path, e)
            return CredentialState()
        if not isinstance(data, dict):
            return CredentialState()
        return CredentialState.from_dict(data)

    def save(self, state):
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w") as f:
            json.dump(state.to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(tmp, self.path)
