# seed_demo.py
import os

import requests

BASE_URL = os.getenv("CIRCULATION_BASE_URL", "http://localhost:5001")
SERVICE_API_KEY = os.getenv("SERVICE_API_KEY", "dev-service-key")
PER_DAY_FINE = "1.50"

TITLES = [
    {"isbn": "978-0132350884", "title": "Clean Code"},
    {"isbn": "978-0201616224", "title": "The Pragmatic Programmer"},
    {"isbn": "978-0131103627", "title": "The C Programming Language"},
    {"isbn": "978-0134685991", "title": "Effective Java"},
    {"isbn": "978-0262033848", "title": "Introduction to Algorithms"},
    {"isbn": "978-1491950357", "title": "Designing Data-Intensive Applications"},
]

MEMBERS = [
    "alice@example.com",
    "bob@example.com",
    "carol@example.com",
]


def _headers():
    return {"X-API-Key": SERVICE_API_KEY}


def check_service(url):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] circulation -> {health_url} -> {r.status_code}")
        return r.ok
    except Exception as e:
        print(f"[ERROR] circulation not reachable at {health_url}: {e}")
        return False


def set_fine_rate():
    print("\n== Fine settings ==")
    resp = requests.put(
        f"{BASE_URL}/api/fines/settings",
        headers=_headers(),
        json={"per_day_fine": PER_DAY_FINE},
        timeout=5,
    )
    print(f"  per_day_fine={PER_DAY_FINE} -> {resp.status_code}")
    return resp.ok


def seed_titles():
    print("\n== Registering titles ==")
    for i, title in enumerate(TITLES, start=1):
        payload = dict(title)
        # the last title has a single copy so reservations queue up on it
        payload["total_copies"] = 1 if i == len(TITLES) else 2 + (i % 3)
        resp = requests.post(
            f"{BASE_URL}/api/titles",
            headers=_headers(),
            json=payload,
            timeout=5,
        )
        print(f"  [{i:02}] {title['title']} -> {resp.status_code}")
        if not resp.ok:
            print(f"      Body: {resp.text.strip()}")


def seed_circulation():
    """A couple of direct loans and a reservation queue on the scarce title."""
    print("\n== Loans and reservations ==")
    loans = []
    for member, title in zip(MEMBERS, TITLES):
        resp = requests.post(
            f"{BASE_URL}/api/loans",
            headers=_headers(),
            json={"isbn": title["isbn"], "member_id": member},
            timeout=5,
        )
        print(f"  loan {title['isbn']} -> {member}: {resp.status_code}")
        if resp.ok:
            loans.append(resp.json()["id"])

    scarce = TITLES[-1]["isbn"]
    reservations = []
    for member in MEMBERS:
        resp = requests.post(
            f"{BASE_URL}/api/reservations",
            json={"isbn": scarce, "member_id": member},
            timeout=5,
        )
        print(f"  reserve {scarce} for {member}: {resp.status_code}")
        if resp.ok:
            reservations.append(resp.json()["id"])

    # first in the queue gets the only copy
    if reservations:
        resp = requests.post(
            f"{BASE_URL}/api/reservations/{reservations[0]}/issue",
            headers=_headers(),
            timeout=5,
        )
        print(f"  issue reservation {reservations[0]}: {resp.status_code}")
        if resp.ok:
            loans.append(resp.json()["id"])

    return loans, reservations


def main():
    print("Checking circulation service...")
    if not check_service(BASE_URL):
        print("\nCirculation service is not reachable. Make sure it is running on 5001.")
        return

    set_fine_rate()
    seed_titles()
    loans, reservations = seed_circulation()

    print("\nDone.")
    print(f"  {len(loans)} open loans, {len(reservations)} reservations queued")
    print("Try hitting:")
    print(f"  {BASE_URL}/api/reservations  (with X-API-Key)")
    print(f"  {BASE_URL}/api/members/{MEMBERS[0]}/fine")


if __name__ == "__main__":
    main()
