"""DEV mode storage: save normalized pages to data/dev/ for inspection."""
import json
import logging
from pathlib import Path
from typing import Any, Optional
import orjson

from vendsync.config import DATA_DIR

logger = logging.getLogger(__name__)

DEV_DIR = DATA_DIR / "dev"


class DevStorage:
    """Writes each page's rows as they would be sent to storage."""

    def __init__(self, run_id: str, base_dir: Optional[Path] = None):
        self.run_dir = (base_dir or DEV_DIR) / run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

    def save_page(
        self,
        page_number: int,
        raw_count: int,
        line_rows: list[dict[str, Any]],
        summary_rows: list[dict[str, Any]],
    ) -> Path:
        """Save one page of normalized rows plus a small summary."""
        page_dir = self.run_dir / f"page_{page_number:04d}"
        page_dir.mkdir(exist_ok=True)

        summary = {
            "page": page_number,
            "raw_sales": raw_count,
            "line_items": len(line_rows),
            "order_summaries": len(summary_rows),
            "placeholders": sum(1 for r in line_rows if r.get("is_placeholder")),
        }
        with open(page_dir / "summary.json", "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2, ensure_ascii=False)

        # raw_data is large and already JSON text
        lines = [{k: v for k, v in row.items() if k != "raw_data"} for row in line_rows]
        with open(page_dir / "orders.json", "wb") as f:
            f.write(orjson.dumps(lines, option=orjson.OPT_INDENT_2))
        with open(page_dir / "sales.json", "wb") as f:
            f.write(orjson.dumps(summary_rows, option=orjson.OPT_INDENT_2))

        logger.info(f"[DEV] Saved page {page_number} to {page_dir}")
        return page_dir
