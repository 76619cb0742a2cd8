"""Create the single system admin account if no active one exists."""

import logging

from pymongo import ReturnDocument

import account_service
from config import SEED_ADMIN_EMAIL, SEED_ADMIN_PASSWORD, SEED_ADMIN_USERNAME, configure_logging
from database import USERS, ensure_indexes, get_db
from utils import to_public_json, utcnow

logger = logging.getLogger(__name__)


def ensure_system_admin(db):
    if account_service.active_system_admin_exists(db):
        logger.info("Active system admin already exists, skipping seed")
        return None

    # a deactivated seed account keeps its username, bring it back instead of colliding
    revived = db[USERS].find_one_and_update(
        {"username": SEED_ADMIN_USERNAME, "role": "systemAdmin", "is_active": False},
        {"$set": {"is_active": True, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if revived:
        logger.info("System admin %s reactivated", SEED_ADMIN_USERNAME)
        return to_public_json(revived)

    result = account_service.signup(db, {
        "username": SEED_ADMIN_USERNAME,
        "email": SEED_ADMIN_EMAIL,
        "password": SEED_ADMIN_PASSWORD,
        "first_name": "System",
        "last_name": "Administrator",
        "role": "systemAdmin",
        "admin_info": {
            "permissions": ["manage_system", "manage_schools", "manage_all_users", "view_all_data"],
            "access_level": "full",
        },
    })
    db[USERS].update_one(
        {"username": SEED_ADMIN_USERNAME},
        {"$set": {"is_verified": True, "updated_at": utcnow()},
         "$unset": {"email_verification_token": "", "email_verification_expires": ""}},
    )
    logger.info("System admin %s created, change the seeded password after first login", SEED_ADMIN_USERNAME)
    return result["user"]


if __name__ == "__main__":
    configure_logging()
    database = get_db()
    ensure_indexes(database)
    ensure_system_admin(database)
