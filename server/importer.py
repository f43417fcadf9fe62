# CiviGuard: Seed Data Importer
# Resets the users and complaints collections and loads demo data
#
# Usage:  python server/importer.py      (from repo root)
#     or: python importer.py             (from server/)

import sys
from pathlib import Path

from pymongo import MongoClient

# Ensure the seed package is importable when running from repo root
_server_dir = Path(__file__).resolve().parent
if str(_server_dir) not in sys.path:
    sys.path.insert(0, str(_server_dir))

from seed.config import MONGODB_URL, MONGODB_DB
from seed.users import import_users, USERS
from seed.complaints import import_complaints, COMPLAINTS


def main():
    print("=" * 64)
    print("  CiviGuard: Data Importer")
    print("=" * 64)

    # ------------------------------------------------------------------
    # 1. Connect MongoDB
    # ------------------------------------------------------------------
    print("\n[1/4] Connecting to MongoDB...")
    mongo_client = MongoClient(MONGODB_URL, tz_aware=True)
    db = mongo_client[MONGODB_DB]
    print(f"  Connected: {MONGODB_URL} (database: {MONGODB_DB})")

    # ------------------------------------------------------------------
    # 2. Reset collections
    # ------------------------------------------------------------------
    print("\n[2/4] Resetting collections...")
    for coll_name in ["complaints", "users"]:
        db[coll_name].drop()
    print("  MongoDB: complaints, users")

    # ------------------------------------------------------------------
    # 3. Seed users
    # ------------------------------------------------------------------
    print("\n[3/4] Users")
    user_ids = import_users(db)

    # ------------------------------------------------------------------
    # 4. Seed complaints
    # ------------------------------------------------------------------
    print("\n[4/4] Complaints")
    inserted = import_complaints(db, user_ids)

    mongo_client.close()

    print("\n" + "=" * 64)
    print("  IMPORT COMPLETE")
    print("=" * 64)
    print(f"  Users:       {len(USERS)}")
    print(f"  Complaints:  {len(COMPLAINTS)} ({sum(1 for c in inserted if c['isPublic'])} public)")
    print()
    print("  Seeded users have synthetic Google ids. To administer the portal,")
    print("  add your own Google email to ADMIN_EMAILS before first sign-in.")
    print("=" * 64)


if __name__ == "__main__":
    main()
