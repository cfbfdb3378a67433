from __future__ import annotations
import httpx
from pathlib import Path
from urllib.parse import quote
from app.core.errors import SourceFetchError
from app.pipeline.base import SourceStore

# Upstream statuses worth retrying later; anything else 4xx is permanent
TRANSIENT_STATUSES = {408, 425, 429, 500, 502, 503, 504}


class HttpSourceStore(SourceStore):
    """Downloads assets over HTTP, e.g. the Drive ``files/{id}?alt=media`` endpoint."""

    def __init__(self, url_template: str, token: str | None = None, timeout: float = 60.0,
                 client: httpx.Client | None = None):
        self.url_template = url_template
        self.token = token
        self.client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def _headers(self) -> dict:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def url_for(self, source_ref: str) -> str:
        if source_ref.startswith(("http://", "https://")):
            return source_ref
        return self.url_template.format(ref=quote(source_ref, safe=""))

    def fetch(self, source_ref: str) -> bytes:
        url = self.url_for(source_ref)
        try:
            r = self.client.get(url, headers=self._headers())
            r.raise_for_status()
        except httpx.TimeoutException as e:
            raise SourceFetchError(f"timeout fetching {source_ref}: {e}", transient=True) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                reason = f"rate limited fetching {source_ref}"
            else:
                reason = f"source returned HTTP {status} for {source_ref}"
            raise SourceFetchError(reason, transient=status in TRANSIENT_STATUSES) from e
        except httpx.TransportError as e:
            raise SourceFetchError(f"connection failed fetching {source_ref}: {e}", transient=True) from e

        if not r.content:
            raise SourceFetchError(f"empty source asset {source_ref}", transient=False)
        return r.content

    def close(self) -> None:
        self.client.close()


class LocalSourceStore(SourceStore):
    """Reads assets from a directory; ``source_ref`` is a path relative to it."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def fetch(self, source_ref: str) -> bytes:
        path = (self.root / source_ref).resolve()
        if not path.is_relative_to(self.root):
            raise SourceFetchError(f"source ref escapes source root: {source_ref}", transient=False)
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise SourceFetchError(f"source asset not found: {source_ref}", transient=False) from e
        except OSError as e:
            raise SourceFetchError(f"failed reading {source_ref}: {e}", transient=True) from e
        if not data:
            raise SourceFetchError(f"empty source asset {source_ref}", transient=False)
        return data
