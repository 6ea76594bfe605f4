import json
import time
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from imagen.core.errors import ValidationError
from imagen.db.tables import CatalogSetting, Folder, MediaEntry

CURRENT_FOLDER_KEY = "current_folder"


def _entry_dict(entry: MediaEntry) -> dict[str, Any]:
    return json.loads(entry.data)


# ── Media entries ───────────────────────────────────────────────────────────


def add_entry(db: Session, data: dict[str, Any]) -> dict[str, Any]:
    """Store a finished generation; assigns uid, timestamp and the current folder.

    The uid is the creation time in milliseconds, bumped past the newest
    existing uid so entries created in the same millisecond stay distinct.
    """
    newest = db.query(func.max(MediaEntry.uid)).scalar() or 0
    uid = max(int(time.time() * 1000), newest + 1)

    entry_data = {
        **data,
        "uid": uid,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "folder": get_current_folder(db),
    }
    entry = MediaEntry(
        uid=uid,
        timestamp=entry_data["timestamp"],
        folder=entry_data["folder"],
        type=entry_data.get("type"),
        name=entry_data.get("name"),
        data=json.dumps(entry_data),
    )
    db.add(entry)
    db.commit()
    return entry_data


def find_by_uid(db: Session, uid: int) -> dict[str, Any] | None:
    entry = db.query(MediaEntry).filter(MediaEntry.uid == uid).first()
    return _entry_dict(entry) if entry else None


def update_entry(db: Session, uid: int, data: dict[str, Any]) -> dict[str, Any] | None:
    entry = db.query(MediaEntry).filter(MediaEntry.uid == uid).first()
    if not entry:
        return None
    entry_data = {**data, "uid": uid}
    entry.folder = entry_data.get("folder", entry.folder) or ""
    entry.type = entry_data.get("type")
    entry.name = entry_data.get("name")
    entry.data = json.dumps(entry_data)
    db.commit()
    return entry_data


def delete_entries(db: Session, uids: list[int]) -> int:
    deleted = db.query(MediaEntry).filter(MediaEntry.uid.in_(uids)).delete()
    db.commit()
    return deleted


def _split_tags(tags: Any) -> list[str]:
    if isinstance(tags, str):
        return [t.strip().lower() for t in tags.split(",") if t.strip()]
    if isinstance(tags, list):
        return [str(t).strip().lower() for t in tags]
    return []


def list_filtered(
    db: Session,
    query: str = "",
    tags: list[str] | None = None,
    folder: str | None = None,
    sort: str = "descending",
    limit: int = 10,
) -> list[dict[str, Any]]:
    """Search entries in one folder (the current one by default).

    ``query`` matches name, description, prompt or the ISO date; every tag
    in ``tags`` must be present on the entry.
    """
    folder = get_current_folder(db) if folder is None else folder
    order = MediaEntry.uid.asc() if sort == "ascending" else MediaEntry.uid.desc()
    rows = db.query(MediaEntry).filter(MediaEntry.folder == folder).order_by(order).all()

    wanted = [t.lower() for t in tags or []]
    needle = query.lower()
    results = []
    for row in rows:
        item = _entry_dict(row)
        if needle:
            haystacks = [item.get("name"), item.get("description"), item.get("prompt")]
            text_match = any(h and needle in str(h).lower() for h in haystacks)
            if not text_match and query not in (item.get("timestamp") or "")[:10]:
                continue
        if wanted:
            item_tags = _split_tags(item.get("tags"))
            if not all(t in item_tags for t in wanted):
                continue
        results.append(item)
        if len(results) >= limit:
            break
    return results


# ── Folders ─────────────────────────────────────────────────────────────────


def get_current_folder(db: Session) -> str:
    setting = db.get(CatalogSetting, CURRENT_FOLDER_KEY)
    return setting.value if setting else ""


def set_current_folder(db: Session, uid: str):
    setting = db.get(CatalogSetting, CURRENT_FOLDER_KEY)
    if setting:
        setting.value = uid
    else:
        db.add(CatalogSetting(key=CURRENT_FOLDER_KEY, value=uid))
    db.commit()


def list_folders(db: Session) -> dict[str, Any]:
    folders = [{"uid": f.uid, "label": f.label} for f in db.query(Folder).all()]
    return {
        "list": [{"uid": "", "label": "Unsorted"}, *folders],
        "current": get_current_folder(db),
    }


def create_or_select_folder(
    db: Session, uid: str | None = None, label: str | None = None
) -> dict[str, Any] | None:
    """Select a folder by uid, or create/rename one by label, and make it current.

    Returns the folder listing, or None when ``uid`` alone names no folder.
    """
    label = label.strip() if isinstance(label, str) else None
    if uid is None and not label:
        raise ValidationError("Must provide either uid or label")

    if not label:
        if uid != "":
            if db.get(Folder, uid) is None:
                return None
        set_current_folder(db, uid)
        return list_folders(db)

    if uid is None:
        folder = db.query(Folder).filter(Folder.label == label).first()
        if folder is None:
            folder = Folder(uid=f"folder-{int(time.time() * 1000)}", label=label)
            db.add(folder)
    else:
        folder = db.get(Folder, uid)
        if folder is None:
            folder = Folder(uid=uid, label=label)
            db.add(folder)
        else:
            folder.label = label
    db.commit()
    set_current_folder(db, folder.uid)
    return list_folders(db)
