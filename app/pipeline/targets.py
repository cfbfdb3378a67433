from __future__ import annotations
import os
import tempfile
from pathlib import Path
from app.core.errors import TargetStoreError
from app.pipeline.base import TargetStore

STORED_FILE_MODE = 0o644


class LocalTargetStore(TargetStore):
    """Filesystem target store keyed by item id.

    Writes go to a temp file beside the destination and are swapped in with
    ``os.replace``, so a repeated put leaves exactly one complete object.
    """

    def __init__(self, root: str | Path, prefix: str = "photos/hd"):
        self.root = Path(root)
        self.prefix = prefix.strip("/")

    def key_for(self, item_id: str) -> str:
        return f"{self.prefix}/{item_id}.webp" if self.prefix else f"{item_id}.webp"

    def path_for(self, key: str) -> Path:
        return self.root / key

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self.path_for(key)
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=path.parent, prefix=".upload-", delete=False) as tmp:
                tmp_name = tmp.name
                tmp.write(data)
            # Temp files are created 0600
            os.chmod(tmp_name, STORED_FILE_MODE)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise TargetStoreError(f"failed writing {key}: {e}", transient=True) from e
        return key
