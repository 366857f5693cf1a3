"""
Persistance disque du record store (orjson).
- load_collections(Path) → dict des collections ({} si fichier absent)
- dump_collections(Path, collections) → écriture atomique (.tmp puis os.replace)

Un fichier illisible n'est jamais écrasé en silence : il est renommé en `.corrupt`
et le store redémarre vide.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict

import orjson

logger = logging.getLogger(__name__)

Collections = Dict[str, Dict[str, Dict[str, Any]]]


def load_collections(path: Path) -> Collections:
    if not path.exists():
        return {}
    try:
        data = orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError:
        backup = path.with_suffix(path.suffix + ".corrupt")
        os.replace(path, backup)
        logger.error("Record store file unreadable, moved aside", extra={"path": str(path), "backup": str(backup)})
        return {}
    if not isinstance(data, dict):
        logger.warning("Record store file has unexpected shape, ignoring", extra={"path": str(path)})
        return {}
    return data


def dump_collections(path: Path, collections: Collections) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(orjson.dumps(collections, option=orjson.OPT_NON_STR_KEYS))
    os.replace(tmp, path)
