"""Group auto-association: after a successful check-in, join the schedule's groups."""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import ADDED_BY_AUTO
from store import groups_linked_to_schedule, upsert_group_membership

logger = logging.getLogger(__name__)


def ensure_membership(db: Session, user_id: int, schedule_id: int) -> int:
    """Add the user to every active group linked to the schedule.

    Existing memberships are left alone. A failure on one group is logged and
    the remaining groups are still attempted. Returns the number of groups the
    user newly joined.
    """
    joined = 0
    for group_id in groups_linked_to_schedule(db, schedule_id):
        try:
            if upsert_group_membership(db, group_id, user_id, schedule_id, added_by=ADDED_BY_AUTO):
                joined += 1
                logger.info("User %d added to group %d (schedule %d)", user_id, group_id, schedule_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("Could not add user %d to group %d: %s", user_id, group_id, e)
    return joined
