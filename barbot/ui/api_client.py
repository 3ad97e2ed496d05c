"""
HTTP client for the BarBot API.
"""

import json
import os
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import requests


API_BASE = os.getenv("API_BASE", "http://127.0.0.1:5000/api")


def iter_sse(lines: Iterable[str]) -> Iterator[Tuple[str, Dict]]:
    """Parse server-sent event lines into (event name, JSON payload) pairs."""
    name = "message"
    data: List[str] = []
    for line in lines:
        if line is None:
            continue
        if line == "":
            if data:
                try:
                    payload = json.loads("\n".join(data))
                except ValueError:
                    payload = {"raw": "\n".join(data)}
                yield name, payload
            name, data = "message", []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            name = line[6:].strip()
        elif line.startswith("data:"):
            data.append(line[5:].lstrip())


class ApiClient:
    """HTTP client for barbot API."""

    def __init__(self, base_url: str = API_BASE):
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _get(self, path: str, timeout: int = 6):
        r = self.session.get(self._url(path), timeout=timeout)
        r.raise_for_status()
        return r.json()

    def _post(self, path: str, payload=None, timeout: int = 10):
        r = self.session.post(self._url(path), json=payload or {}, timeout=timeout)
        r.raise_for_status()
        return r.json()

    # Status
    def status(self):
        return self._get("status")

    def health(self):
        return self._get("health")

    def initial_state(self):
        return self._get("initial-state")

    # Menu
    def cocktails(self):
        return self._get("cocktails")["cocktails"]

    def ingredients(self):
        return self._get("ingredients")["ingredients"]

    # Orders
    def order(self, cocktail_id: str):
        return self._post(f"cocktails/{cocktail_id}", timeout=30)

    def order_custom(self, ingredients: List[str]):
        return self._post("cocktails/custom", {"ingredients": list(ingredients)}, timeout=30)

    def reset_addresses(self):
        return self._post("reset-addresses", timeout=30)

    # Modbus
    def modbus_config(self):
        return self._get("modbus/config")["config"]

    def set_modbus_config(self, host: str, port: int, unit_id: int = 1, timeout: int = 5000):
        return self._post("modbus/config", {"host": host, "port": port, "unitId": unit_id, "timeout": timeout})

    # Events
    def open_events(self, timeout: Optional[float] = 30) -> requests.Response:
        """Open the event stream; the caller closes the response."""
        r = self.session.get(self._url("events"), stream=True, timeout=timeout,
                             headers={"Accept": "text/event-stream"})
        r.raise_for_status()
        return r
