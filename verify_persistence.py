import time
import subprocess
import httpx
import sys
import os
import signal
from datetime import datetime, timedelta

BASE_URL = "http://127.0.0.1:8000"
API_PREFIX = "/v1"

# Rental that ends while the server is down
RENTAL_SECONDS = 15


def start_server():
    return subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "fleetrental.app.main:app", "--host", "127.0.0.1", "--port", "8000"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env={**os.environ, "DEVICE_API_URL": ""}  # Log device commands instead of sending them
    )


def stop_server(proc):
    proc.send_signal(signal.SIGTERM)
    proc.wait()


def wait_for_server(retries=10, delay=2):
    url = f"{BASE_URL}/health"
    print(f"Waiting for server at {url}...")
    for i in range(retries):
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


def api(path):
    return f"{BASE_URL}{API_PREFIX}{path}"


def run_verification():
    """
    A rental whose end date passes while the service is stopped must be
    disabled by the startup recovery sweep.

    Expects a seeded database (python fleetrental/seed_registry.py).
    """
    print("\n--- [Step 1] Starting Server (Initial) ---")
    proc = start_server()

    try:
        if not wait_for_server():
            server_logs = proc.communicate(timeout=2)
            print("Server Stdout:", server_logs[0].decode())
            print("Server Stderr:", server_logs[1].decode())
            raise Exception("Server start failed")

        print("\n--- [Step 2] Allocating a short rental ---")
        vehicles = httpx.get(api("/vehicles/inactive"), params={"vehicle_type": "2-wheeler"}).json()["vehicles"]
        if not vehicles:
            raise Exception("No INACTIVE 2-wheeler, seed the registry first")
        vehicle = vehicles[0]

        drivers = [1, 2]
        request = None
        start = datetime.utcnow()
        for driver_id in drivers:
            resp = httpx.post(api("/vehicle-requests"), json={
                "driver_id": driver_id,
                "vehicle_type": "2-wheeler",
                "start_date": start.isoformat(),
                "end_date": (start + timedelta(seconds=RENTAL_SECONDS)).isoformat()
            })
            if resp.status_code == 201:
                request = resp.json()
                break
            print(f"⚠️ Driver {driver_id} cannot request: {resp.status_code} {resp.text}")
        if request is None:
            raise Exception("Could not create a vehicle request")

        resp = httpx.post(api(f"/vehicle-requests/{request['id']}/allocate"), json={"vehicle_id": vehicle["id"]})
        if resp.status_code != 200:
            raise Exception(f"Allocation failed: {resp.status_code} {resp.text}")
        print(f"✅ Vehicle {vehicle['vehicle_number']} allocated to request {request['id']}")

    finally:
        print("\n--- [Step 3] Stopping Server ---")
        stop_server(proc)

    print(f"\n--- [Step 4] Waiting {RENTAL_SECONDS + 5}s for the rental to end ---")
    time.sleep(RENTAL_SECONDS + 5)

    print("\n--- [Step 5] Restarting Server (Recovery) ---")
    proc2 = start_server()

    try:
        if not wait_for_server():
            raise Exception("Server restart failed")

        resp = httpx.get(api(f"/vehicles/{vehicle['id']}"))
        status = resp.json()
        if status["status"] == "INACTIVE" and status["action"] == "DISABLE":
            print("✅ Overdue rental disabled by the startup sweep")
        else:
            print(f"❌ Vehicle still {status['status']}/{status['action']} after restart")
            raise Exception("Recovery sweep did not disable the vehicle")

        stored = httpx.get(api(f"/vehicle-requests/{request['id']}")).json()
        print(f"✅ Request {stored['id']} disabled_at: {stored['disabled_at']}")

        # Put the demo vehicle back on the road for the next run
        httpx.post(api(f"/vehicles/{vehicle['id']}/enable"), headers={"X-Actor": "verify_persistence"})

    finally:
        print("\n--- [Step 6] Stopping Server ---")
        stop_server(proc2)


if __name__ == "__main__":
    run_verification()
