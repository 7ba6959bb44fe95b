from __future__ import annotations

import json
import urllib.error
import urllib.request


class HttpRequestError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status is not None and (self.status == 429 or self.status >= 500)


def post_json(url: str, payload: dict, *, timeout_s: float = 5.0, headers: dict[str, str] | None = None) -> dict:
    data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json", "Accept": "application/json", **(headers or {})},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            body = resp.read().decode("utf-8", errors="replace")
            return json.loads(body) if body else {}
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        raise HttpRequestError(f"HTTP {exc.code} from {_redact(url)}: {body}", status=exc.code) from exc
    except urllib.error.URLError as exc:
        raise HttpRequestError(f"Request to {_redact(url)} failed: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
        raise HttpRequestError(f"Invalid JSON from {_redact(url)}: {exc}") from exc


def _redact(url: str) -> str:
    return url.split("?", 1)[0]
