import requests, uuid

BASE = "http://localhost:8001/api"
PASSWORD = "dev-password-123"

# Admin must exist: start the server with ADMIN_EMAIL / ADMIN_PASSWORD set
ADMIN_EMAIL = "admin@skillswap.dev"
ADMIN_PASSWORD = "admin-password-123"

def p(label, r):
    print("==>", label, r.status_code)
    try:
        print(r.json())
    except Exception:
        print(r.text)

def head(token):
    return {"Authorization": f"Bearer {token}"}

run = uuid.uuid4().hex[:6]

# Register A and B
ra = requests.post(f"{BASE}/register", json={"email": f"alice-{run}@skillswap.dev", "password": PASSWORD, "name": "Alice"})
p("register_A", ra)
rb = requests.post(f"{BASE}/register", json={"email": f"bob-{run}@skillswap.dev", "password": PASSWORD, "name": "Bob"})
p("register_B", rb)
token_a = requests.post(f"{BASE}/login", json={"email": f"alice-{run}@skillswap.dev", "password": PASSWORD}).json()["token"]
token_b = rb.json()["token"]
bob_id = rb.json()["user"]["id"]

# Profiles
requests.put(f"{BASE}/profile", headers=head(token_a), json={"skillsOffered": ["Photography"], "skillsWanted": ["Guitar"]})
requests.put(f"{BASE}/profile", headers=head(token_b), json={"skillsOffered": ["Guitar"], "availability": ["weekends"]})

# Search
r = requests.get(f"{BASE}/search", headers=head(token_a), params={"skill": "guitar", "type": "offered"})
p("search_A", r)

# Swap request A -> B, B accepts
r = requests.post(f"{BASE}/swap-request", headers=head(token_a), json={
    "targetUserId": bob_id, "offeredSkill": "Photography", "requestedSkill": "Guitar", "message": "Hi Bob!"
})
p("swap_request", r)
sid = r.json()["swapRequest"]["id"]
r = requests.put(f"{BASE}/swap-request/{sid}", headers=head(token_b), json={"status": "accepted"})
p("accept", r)
p("list_B", requests.get(f"{BASE}/swap-requests", headers=head(token_b)))

# Rating A -> B
r = requests.post(f"{BASE}/rating", headers=head(token_a), json={"targetUserId": bob_id, "rating": 5, "feedback": "Great", "swapRequestId": sid})
p("rating", r)
p("ratings_B", requests.get(f"{BASE}/ratings/{bob_id}", headers=head(token_a)))

# Admin report
ra = requests.post(f"{BASE}/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
p("admin_login", ra)
if ra.status_code == 200:
    p("report", requests.get(f"{BASE}/admin/reports", headers=head(ra.json()["token"])))

print("DONE")
