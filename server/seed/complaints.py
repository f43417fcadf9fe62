# Seed data: Complaints around the default city centre
#
# Coverage matrix:
#   Categories: pothole, garbage, water_leak, street_light, other
#   Priorities: low, medium, high, critical
#   Statuses  : pending, in-progress, resolved
#   Special   : isPublic on/off, comments, images, pre-enhanced text

from datetime import timedelta

from .config import new_id, now_utc, geojson_point

# ---------------------------------------------------------------------------
# Complaint records
# ---------------------------------------------------------------------------
COMPLAINTS = [
    {"title": "Large Pothole on Main Street",
     "description": "A large pothole causing traffic issues near the bus stop.",
     "enhancedTitle": "Large pothole obstructing traffic on Main Street near the bus stop",
     "enhancedDescription": "A deep pothole on Main Street next to the bus stop is forcing vehicles to swerve and slowing traffic during peak hours. It needs to be filled before it causes an accident.",
     "category": "pothole", "priority": "high", "status": "pending",
     "lat": 17.3850, "lng": 78.4867, "isPublic": True, "owner": "citizen1",
     "images": ["https://example.com/pothole1.jpg"], "days_ago": 1},

    {"title": "Garbage Pile Near Park",
     "description": "Uncollected garbage for several days at the park entrance.",
     "category": "garbage", "priority": "medium", "status": "in-progress",
     "lat": 17.3950, "lng": 78.4967, "isPublic": True, "owner": "citizen2",
     "images": ["https://example.com/garbage1.jpg"], "days_ago": 3,
     "comments": [("admin", "Sanitation crew has been scheduled for this week.")]},

    {"title": "Water pipe burst",
     "description": "Drinking water line burst on 4th cross road, water flooding the street.",
     "category": "water_leak", "priority": "critical", "status": "in-progress",
     "lat": 17.3750, "lng": 78.4967, "isPublic": True, "owner": "citizen3", "days_ago": 2},

    {"title": "Street light not working",
     "description": "Street light outside house no. 12 has been off for a week, the lane is dark at night.",
     "category": "street_light", "priority": "medium", "status": "resolved",
     "lat": 17.4050, "lng": 78.4667, "isPublic": False, "owner": "citizen1", "days_ago": 9,
     "comments": [("admin", "Bulb replaced by the electrical team.")]},

    {"title": "Broken footpath tiles",
     "description": "Loose tiles on the footpath near the school gate, children tripping.",
     "category": "other", "priority": "low", "status": "pending",
     "lat": 17.3900, "lng": 78.4800, "isPublic": False, "owner": "citizen2", "days_ago": 5},

    {"title": "Overflowing drain",
     "description": "Drain near the market overflows every time it rains.",
     "category": "water_leak", "priority": "high", "status": "pending",
     "lat": 17.3800, "lng": 78.4750, "isPublic": True, "owner": "citizen3", "days_ago": 6},

    {"title": "Dumped construction debris",
     "description": "Construction debris dumped on the roadside blocking half the lane.",
     "category": "garbage", "priority": "low", "status": "resolved",
     "lat": 17.4000, "lng": 78.4900, "isPublic": False, "owner": "citizen1", "days_ago": 14},

    {"title": "Series of potholes after rain",
     "description": "Multiple potholes have opened up along the ring road service lane.",
     "category": "pothole", "priority": "critical", "status": "pending",
     "lat": 17.4100, "lng": 78.5000, "isPublic": True, "owner": "citizen2", "days_ago": 0},
]

# ---------------------------------------------------------------------------
# Import function
# ---------------------------------------------------------------------------
def import_complaints(db, user_ids: dict[str, str]) -> list[dict]:
    """Insert seed complaints owned by the seeded users."""
    print("\n  Importing seed complaints...")
    inserted: list[dict] = []
    for i, c in enumerate(COMPLAINTS):
        created = now_utc() - timedelta(days=c["days_ago"], hours=i)
        updated = created if c["status"] == "pending" else created + timedelta(hours=12)
        comments = [
            {"id": new_id(), "userId": user_ids[author], "text": text,
             "createdAt": created + timedelta(hours=6)}
            for author, text in c.get("comments", [])
        ]
        doc = {
            "_id": new_id(),
            "title": c["title"],
            "description": c["description"],
            "enhancedTitle": c.get("enhancedTitle", c["title"]),
            "enhancedDescription": c.get("enhancedDescription", c["description"]),
            "category": c["category"],
            "priority": c["priority"],
            "status": c["status"],
            "location": geojson_point(c["lat"], c["lng"]),
            "address": None,
            "userId": user_ids[c["owner"]],
            "images": c.get("images", []),
            "comments": comments,
            "isPublic": c["isPublic"],
            "createdAt": created,
            "updatedAt": updated,
        }
        db.complaints.insert_one(doc)
        inserted.append(doc)
        print(f"    [{i+1:2d}/{len(COMPLAINTS)}] {c['status']:11s}  {c['title'][:52]}")

    db.complaints.create_index("createdAt")
    db.complaints.create_index("userId")
    db.complaints.create_index("isPublic")
    db.complaints.create_index("status")
    db.complaints.create_index([("location", "2dsphere")])

    print(f"  => {len(COMPLAINTS)} complaints imported")
    return inserted
