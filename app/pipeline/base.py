class SourceStore:
    """Fetches original asset bytes by source reference."""
    def fetch(self, source_ref: str) -> bytes:
        raise NotImplementedError

    def close(self) -> None:
        pass


class TargetStore:
    """Stores transformed bytes under a deterministic key, overwriting."""
    def key_for(self, item_id: str) -> str:
        raise NotImplementedError

    def put(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError
