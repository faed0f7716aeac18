from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from payflow.core.errors import ConcurrentModification


def commit_or_conflict(db: Session, *, entity: str) -> None:
    """Commit the unit of work, translating a lost version race.

    Rows mapped with ``version_id_col`` are updated with
    ``WHERE version = :seen``; zero matched rows means another writer got
    there first and the whole unit is rolled back.
    """
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrentModification(f"{entity} was modified concurrently; retry the request") from exc
