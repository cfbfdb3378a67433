import logging
import sys


class ContextFormatter(logging.Formatter):
    """Custom formatter that handles optional run_token and item_id fields."""
    def format(self, record):
        # Add default values for run_token and item_id if not present
        if not hasattr(record, 'run_token'):
            record.run_token = '-'
        if not hasattr(record, 'item_id'):
            record.item_id = '-'
        return super().format(record)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ContextFormatter(
        "%(asctime)s %(levelname)s %(name)s [run=%(run_token)s item=%(item_id)s] - %(message)s"
    ))
    logging.basicConfig(
        level=level,
        handlers=[handler],
    )
