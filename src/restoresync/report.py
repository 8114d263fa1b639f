from pathlib import Path

import orjson

from restoresync import __version__
from restoresync.session import SyncStats
from restoresync.settings import SyncSettings, home_dir


def default_report_path(started: str) -> Path:
    return home_dir() / "reports" / f"sync-{started}.json"


def write_report(stats: SyncStats, settings: SyncSettings, out_path: Path,
                 root_a: Path, root_b: Path = None, started: str = None) -> Path:
    """Write the run counters and settings as indented JSON."""
    payload = {
        "version": __version__,
        "started": started,
        "root_a": str(root_a),
        "root_b": str(root_b) if root_b is not None else None,
        "settings": vars(settings),
        "stats": stats.as_dict(),
        "ok": stats.ok,
    }
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "wb") as f:
        f.write(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
    print(f"✅ Report written to {out_path}")
    return out_path
