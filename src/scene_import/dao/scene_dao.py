import uuid
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from scene_import.errors import PersistenceError, ValidationError
from scene_import.models.import_job import ImportJob, ImportJobStatus
from scene_import.models.scene import Scene, SceneCharacter, SceneLine
from scene_import.tools.structuring_tool import DEFAULT_TITLE

logger = logging.getLogger(__name__)


def _clean_lines(draft: dict) -> list[tuple[str, str]]:
    kept = []
    for line in draft.get("lines") or []:
        if not isinstance(line, dict):
            continue
        name = str(line.get("characterName") or "").strip()
        text = str(line.get("text") or "").strip()
        if name and text:
            kept.append((name, text))
    return kept


def commit_draft(db: Session, owner_id: str, draft: dict, job_id: str | None = None) -> Scene:
    """
    Persist a (possibly user-edited) draft as a private scene.
    Characters are rebuilt from the kept lines; orders are renumbered 1..N.
    When `job_id` is given, the owner's job moves preview_ready → completed.
    """
    if not isinstance(draft, dict):
        raise ValidationError("Invalid draft")
    kept = _clean_lines(draft)
    if not kept:
        raise ValidationError("The draft has no valid line")

    job = None
    if job_id:
        job = db.query(ImportJob).filter_by(id=job_id, owner_id=owner_id).first()
        if job is None:
            raise ValidationError("Import job not found or access denied")
        if job.status != ImportJobStatus.PREVIEW_READY:
            raise ValidationError(f"Import job is '{job.status.value}', expected 'preview_ready'")

    title = str(draft.get("title") or "").strip() or DEFAULT_TITLE
    author = str(draft.get("author") or "").strip() or None

    scene = Scene(id=str(uuid.uuid4()), title=title, author=author, is_private=True, owner_user_id=owner_id)
    by_name: dict[str, SceneCharacter] = {}
    for name, _ in kept:
        if name not in by_name:
            by_name[name] = SceneCharacter(name=name)
            scene.characters.append(by_name[name])
    for order, (name, text) in enumerate(kept, start=1):
        scene.lines.append(SceneLine(character=by_name[name], text=text, order=order))

    try:
        db.add(scene)
        if job is not None:
            job.status   = ImportJobStatus.COMPLETED
            job.scene_id = scene.id
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Commit of draft for owner %s failed: %s", owner_id, e)
        raise PersistenceError(f"Could not create the scene: {e}") from e

    db.refresh(scene)
    logger.info("Scene %s created for owner %s (%d characters, %d lines)", scene.id, owner_id, len(by_name), len(kept))
    return scene
