from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from app.core.config import Settings
from app.core.errors import ItemFailure
from app.core.workflow import ClaimedItem, ItemOutcome, RunConfig
from app.pipeline.base import SourceStore, TargetStore
from app.pipeline.sources import HttpSourceStore, LocalSourceStore
from app.pipeline.targets import LocalTargetStore
from app.pipeline.transform import transform_image, OUTPUT_CONTENT_TYPE

log = logging.getLogger(__name__)


@dataclass
class TransformPipeline:
    source: SourceStore
    target: TargetStore

    def process(self, item: ClaimedItem, config: RunConfig, run_token: str = "-") -> ItemOutcome:
        """Fetch, transform and store one item. Never raises for item failures."""
        started = time.monotonic()
        ctx = {"run_token": run_token, "item_id": item.id}
        try:
            original = self.source.fetch(item.source_ref)
            image = transform_image(original, max_width=config.max_width, quality=config.quality)
            target_ref = self.target.put(self.target.key_for(item.id), image.data, OUTPUT_CONTENT_TYPE)
        except ItemFailure as e:
            log.warning("Item failed: %s", e.classified(), extra=ctx)
            return ItemOutcome(
                item_id=item.id,
                ok=False,
                error_message=e.classified(),
                processing_time_ms=_elapsed_ms(started),
            )
        except Exception as e:
            log.exception("Unexpected item failure", extra=ctx)
            return ItemOutcome(
                item_id=item.id,
                ok=False,
                error_message=f"permanent: unexpected {type(e).__name__}: {e}",
                processing_time_ms=_elapsed_ms(started),
            )

        log.debug("Item stored at %s", target_ref, extra=ctx)
        return ItemOutcome(
            item_id=item.id,
            ok=True,
            target_ref=target_ref,
            original_size=len(original),
            processed_size=len(image.data),
            original_width=image.original_width,
            original_height=image.original_height,
            processed_width=image.width,
            processed_height=image.height,
            processing_time_ms=_elapsed_ms(started),
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def build_pipeline(settings: Settings) -> TransformPipeline:
    if settings.source_store == "local":
        source: SourceStore = LocalSourceStore(settings.source_dir)
    elif settings.source_store == "http":
        source = HttpSourceStore(
            url_template=settings.source_url_template,
            token=settings.source_auth_token,
            timeout=settings.source_timeout_seconds,
        )
    else:
        raise ValueError(f"Unknown source store: {settings.source_store}")
    target = LocalTargetStore(settings.target_dir, prefix=settings.target_prefix)
    return TransformPipeline(source=source, target=target)
