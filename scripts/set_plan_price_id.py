"""
Script to map a subscription plan to its Stripe price.
Usage: python set_plan_price_id.py <plan_name> <price_id>
"""
import os
import sys
import requests

# Configuration
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
# Token of an administrator account
AUTH_TOKEN = os.getenv("ADMIN_TOKEN", "YOUR_JWT_TOKEN_HERE")

PRICE_ID_PREFIX = "price_"


def find_plan(plan_name: str, headers: dict):
    response = requests.get(f"{API_BASE_URL}/api/v1/plans", headers=headers, timeout=30)
    response.raise_for_status()
    plans = response.json()["plans"]
    for plan in plans:
        if plan["name"] == plan_name:
            return plan
    print(f"Error: Plan '{plan_name}' not found.")
    print(f"  Available plans: {', '.join(p['name'] for p in plans)}")
    return None


def set_price_id(plan_name: str, price_id: str) -> bool:
    if not price_id.startswith(PRICE_ID_PREFIX):
        print(f"Error: Invalid Stripe Price ID. It must start with \"{PRICE_ID_PREFIX}\"")
        return False

    headers = {
        "Authorization": f"Bearer {AUTH_TOKEN}",
        "Content-Type": "application/json",
    }
    plan = find_plan(plan_name, headers)
    if plan is None:
        return False

    url = f"{API_BASE_URL}/api/v1/admin/plans/{plan['id']}/price-id"
    print(f"Setting price id for plan {plan_name}...")
    response = requests.put(url, headers=headers, json={"price_id": price_id}, timeout=30)

    if response.status_code == 200:
        data = response.json()
        print(f"✓ Stripe Price ID set for '{data.get('display_name') or data['name']}' plan:")
        print(f"  Plan: {data['name']} (ID: {data['id']})")
        print(f"  Price: {data['price']} {data['currency']}")
        print(f"  Stripe Price ID: {data['external_price_id']}")
        return True
    else:
        print(f"✗ Failed to set price id. Status: {response.status_code}")
        print(f"  Response: {response.text}")
        return False


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print("Usage: python set_plan_price_id.py <plan_name> <price_id>")
        print("Example: python set_plan_price_id.py basic price_1PqXyZ2eZvKYlo2C")
        sys.exit(1)

    if AUTH_TOKEN == "YOUR_JWT_TOKEN_HERE":
        print("Error: Please set ADMIN_TOKEN to an administrator's JWT before running.")
        sys.exit(1)

    success = set_price_id(sys.argv[1], sys.argv[2])
    sys.exit(0 if success else 1)
