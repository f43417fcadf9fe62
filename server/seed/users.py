# Seed data: Users (demo citizens and an admin)
#
# Seeded users carry synthetic googleId values; signing in with a real Google
# account always creates a separate user.

from .config import new_id, now_utc

# ---------------------------------------------------------------------------
# Raw user definitions
# ---------------------------------------------------------------------------
USERS = [
    {"key": "citizen1", "googleId": "seed-citizen-1",
     "name": "Ravi Teja", "email": "ravi.teja@example.com", "role": "citizen"},

    {"key": "citizen2", "googleId": "seed-citizen-2",
     "name": "Sana Begum", "email": "sana.begum@example.com", "role": "citizen"},

    {"key": "citizen3", "googleId": "seed-citizen-3",
     "name": "Arjun Reddy", "email": "arjun.reddy@example.com", "role": "citizen"},

    {"key": "admin", "googleId": "seed-admin-1",
     "name": "Municipal Administrator", "email": "admin@civiguard.example.org", "role": "admin"},
]

# ---------------------------------------------------------------------------
# Import function
# ---------------------------------------------------------------------------
def import_users(db) -> dict[str, str]:
    """Insert seed users into MongoDB. Returns {key: _id} mapping."""
    print("\n  Importing seed users...")
    user_ids: dict[str, str] = {}
    for u in USERS:
        uid = new_id()
        now = now_utc()
        db.users.insert_one({
            "_id": uid,
            "googleId": u["googleId"],
            "email": u["email"],
            "name": u["name"],
            "picture": None,
            "role": u["role"],
            "createdAt": now,
            "lastLoginAt": now,
        })
        user_ids[u["key"]] = uid
        print(f"    {u['key']:12s}  ({u['role']})")
    db.users.create_index([("googleId", 1)], unique=True)
    print(f"  => {len(USERS)} users created")
    return user_ids
