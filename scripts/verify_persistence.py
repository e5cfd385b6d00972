"""
Persistence check across a server restart.

Starts the API with uvicorn, writes a base price through the finance
settings endpoint, restarts the server and reads it back.

Usage:
    python backend/seed_users.py                  # prints bearer tokens
    SUPERADMIN_TOKEN=<token> python scripts/verify_persistence.py
"""

import os
import signal
import subprocess
import sys
import time

import httpx

BASE_URL = "http://127.0.0.1:8000"
API_PREFIX = "/v1"
PROBE_STATUS = "Nov korisnik"


def start_server(echo: bool = False):
    env = {**os.environ, "DB_ECHO": "True"} if echo else None
    return subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "backend.app.main:app", "--host", "127.0.0.1", "--port", "8000"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env,
    )


def stop_server(proc):
    proc.send_signal(signal.SIGTERM)
    proc.wait()


def wait_for_server(retries=10, delay=2):
    url = f"{BASE_URL}/health"
    print(f"Waiting for server at {url}...")
    for _ in range(retries):
        try:
            resp = httpx.get(url)
            if resp.status_code == 200:
                print("✅ Server is up!")
                return True
        except httpx.ConnectError:
            pass
        time.sleep(delay)
    print("❌ Server failed to start.")
    return False


def run_verification(token: str) -> int:
    headers = {"Authorization": f"Bearer {token}"}
    settings_url = f"{BASE_URL}{API_PREFIX}/finances/settings"
    probe_price = float(int(time.time()) % 100000)

    print("\n--- [Step 1] Starting Server (Initial) ---")
    proc = start_server(echo=True)
    try:
        if not wait_for_server():
            stdout, stderr = proc.communicate(timeout=2)
            print("Server Stdout:", stdout.decode())
            print("Server Stderr:", stderr.decode())
            return 1

        print("\n--- [Step 2] Writing Base Price ---")
        resp = httpx.post(settings_url, headers=headers, json={"prices_by_customer_status": {PROBE_STATUS: probe_price}})
        if resp.status_code != 200:
            print(f"❌ Settings update failed: {resp.status_code} {resp.text}")
            return 1
        print(f"✅ Base price for '{PROBE_STATUS}' set to {probe_price}")
    finally:
        print("\n--- [Step 3] Stopping Server ---")
        stop_server(proc)

    time.sleep(2)  # Wait for port release

    print("\n--- [Step 4] Restarting Server (Verification) ---")
    proc = start_server()
    try:
        if not wait_for_server():
            return 1

        print("\n--- [Step 5] Reading Settings (Post-Restart) ---")
        resp = httpx.get(settings_url, headers=headers)
        if resp.status_code != 200:
            print(f"❌ Settings read failed: {resp.status_code} {resp.text}")
            return 1

        stored = resp.json()["prices_by_customer_status"].get(PROBE_STATUS)
        if stored != probe_price:
            print(f"❌ Expected {probe_price}, found {stored} (persistence issue?)")
            return 1
        print("✅ Settings persisted across restart")
        return 0
    finally:
        print("\n--- [Step 6] Stopping Server ---")
        stop_server(proc)


if __name__ == "__main__":
    token = os.getenv("SUPERADMIN_TOKEN")
    if not token:
        print("Set SUPERADMIN_TOKEN to a super admin bearer token (see backend/seed_users.py)")
        sys.exit(2)
    sys.exit(run_verification(token))
