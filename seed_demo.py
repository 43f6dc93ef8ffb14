# seed_demo.py
import requests

BASE_URL = "http://localhost:5000"
SERVICE_API_KEY = "dev-service-key"
HEADERS = {"X-API-Key": SERVICE_API_KEY}

PLANS = [
    {"name": "Basic", "book_quota": 3},
    {"name": "Family", "book_quota": 6},
]

CUSTOMERS = [
    {"customer_id": "C-1001", "name": "Asha Rao", "email": "asha@example.com", "plan_name": "Basic"},
    {"customer_id": "C-1002", "name": "Vikram Shah", "email": "vikram@example.com", "plan_name": "Family"},
    {"customer_id": "C-1003", "name": "Meera Iyer", "email": "meera@example.com", "plan_name": "Basic"},
]

TITLES = [
    {
        "isbn": "9780064430173",
        "title": "Goodnight Moon",
        "authors": "Margaret Wise Brown",
        "tags": "bedtime, classic",
        "min_age": 0,
        "max_age": 4,
    },
    {
        "isbn": "9780399226908",
        "title": "The Very Hungry Caterpillar",
        "authors": "Eric Carle",
        "tags": "animals, counting",
        "min_age": 1,
        "max_age": 5,
    },
    {
        "isbn": "9780060254926",
        "title": "Where the Wild Things Are",
        "authors": "Maurice Sendak",
        "tags": "adventure, classic",
        "min_age": 3,
        "max_age": 8,
    },
    {
        "isbn": "9780141354828",
        "title": "Matilda",
        "authors": "Roald Dahl",
        "tags": "school, humour",
        "min_age": 7,
        "max_age": 12,
    },
    {
        "isbn": "9780439708180",
        "title": "Harry Potter and the Sorcerer's Stone",
        "authors": "J.K. Rowling",
        "tags": "fantasy, magic",
        "min_age": 9,
        "max_age": 14,
    },
]


def check_service(url):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except Exception as e:
        print(f"[ERROR] circulation service not reachable at {health_url}: {e}")
        return False


def post(path, payload):
    resp = requests.post(f"{BASE_URL}{path}", json=payload, headers=HEADERS, timeout=5)
    if not resp.ok:
        print(f"      {path} -> {resp.status_code} {resp.text.strip()}")
    return resp


def seed_plans_and_customers():
    print("\n== Plans and customers ==")
    for plan in PLANS:
        print(f"  plan {plan['name']}: {post('/api/plans', plan).status_code}")
    for c in CUSTOMERS:
        print(f"  customer {c['customer_id']}: {post('/api/customers', c).status_code}")


def seed_titles():
    print("\n== Titles and copies ==")
    for i, title in enumerate(TITLES, start=1):
        post("/api/titles", title)
        # vary copies per title, some for sale
        for n in range(1 + (i % 3)):
            price = 149 + 50 * n if i % 2 else None
            post(f"/api/titles/{title['isbn']}/copies", {"location": "MAIN", "ask_price": price})
        print(f"  [{i:02}] {title['title']}")


def place_demo_holds():
    print("\n== Holds ==")
    requests_to_make = [
        ("C-1001", TITLES[0]["isbn"]),
        ("C-1002", TITLES[1]["isbn"]),
        ("C-1003", TITLES[0]["isbn"]),  # already requested -> rejected
    ]
    for customer_id, isbn in requests_to_make:
        resp = requests.post(
            f"{BASE_URL}/api/holds",
            json={"customer_id": customer_id, "isbn": isbn},
            timeout=5,
        )
        print(f"  {customer_id} -> {isbn}: {resp.status_code} {resp.json()}")


def main():
    print("Checking circulation service...")
    if not check_service(BASE_URL):
        print("\nService is not reachable. Make sure it is running on 5000.")
        return

    seed_plans_and_customers()
    seed_titles()
    place_demo_holds()

    print("\nDone.")
    print("Try hitting:")
    print(f"  {BASE_URL}/api/titles")
    print(f"  {BASE_URL}/api/customers/C-1001/holds")


if __name__ == "__main__":
    main()
