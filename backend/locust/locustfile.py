"""
Locust Load Test Suite

Users, studios and sessions come from the catalogue; seed them first and
point the scenarios at them through environment variables:

  LOAD_SESSION_ID      hot session every contention user races for
  LOAD_CHURN_SESSION_ID  session starting well outside the cancellation cutoff
  LOAD_USER_ID_START   first seeded client user id (default 1)
  LOAD_USER_COUNT      number of seeded client users (default 500)
  SECRET_KEY           must match the API's signing key

Run scenarios:
  locust -f locustfile.py --tags contention   # Test overbooking
  locust -f locustfile.py --tags read         # Booking/balance reads
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py --tags churn        # Book then cancel, seats must come back
  locust -f locustfile.py                     # All tests
"""

import itertools
import os
import random

from locust import HttpUser, task, between, tag, events

from studio_booking.core.security import create_access_token

HOT_SESSION_ID = int(os.getenv("LOAD_SESSION_ID", "1"))
CHURN_SESSION_ID = int(os.getenv("LOAD_CHURN_SESSION_ID", "2"))
USER_ID_START = int(os.getenv("LOAD_USER_ID_START", "1"))
USER_COUNT = int(os.getenv("LOAD_USER_COUNT", "500"))

_user_ids = itertools.cycle(range(USER_ID_START, USER_ID_START + USER_COUNT))


def auth_headers() -> dict:
    token = create_access_token({"sub": str(next(_user_ids)), "role": "CLIENT"})
    return {"Authorization": f"Bearer {token}"}


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"Hot session {HOT_SESSION_ID}; {USER_COUNT} users from id {USER_ID_START}")
    print("=" * 60)


class ContentionUser(HttpUser):
    """
    TEST 1: Contention - hundreds of users race for one session

    Run: locust -f locustfile.py --tags contention -u 200 -r 100 --run-time 30s

    After test, verify:
      SELECT booked_count FROM class_sessions WHERE id = X;
      SELECT COUNT(*) FROM bookings WHERE session_id = X AND status IN ('CONFIRMED', 'COMPLETED');
    Both equal, and never above the class max_capacity.
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        self.headers = auth_headers()

    @tag("contention")
    @task
    def book_hot_session(self):
        with self.client.post("/api/v1/bookings",
            json={"session_id": HOT_SESSION_ID},
            headers=self.headers,
            name="/api/v1/bookings [hot]",
            catch_response=True
        ) as resp:
            if resp.status_code == 201:
                resp.success()
            elif resp.status_code == 409:
                resp.success()  # Expected: SESSION_FULL or DUPLICATE_BOOKING
            elif resp.status_code == 503:
                resp.failure("Ledger unavailable under load")
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ReaderUser(HttpUser):
    """
    TEST 2: Read paths while the hot session is contended

    Run: locust -f locustfile.py --tags read -u 100 -r 20 --run-time 60s
    """
    wait_time = between(0.1, 0.5)

    def on_start(self):
        self.headers = auth_headers()

    @tag("read")
    @task(10)
    def list_bookings(self):
        self.client.get("/api/v1/bookings", headers=self.headers)

    @tag("read")
    @task(5)
    def balance(self):
        self.client.get("/api/v1/payments/balance", headers=self.headers)

    @tag("read")
    @task(3)
    def packages(self):
        self.client.get("/api/v1/payments/packages", headers=self.headers)

    @tag("read")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def on_start(self):
        self.headers = auth_headers()

    @tag("edge")
    @task
    def unknown_session(self):
        with self.client.post("/api/v1/bookings",
            json={"session_id": 999999},
            headers=self.headers,
            catch_response=True
        ) as resp:
            if resp.status_code == 404:
                resp.success()
            else:
                resp.failure(f"Expected 404, got {resp.status_code}")

    @tag("edge")
    @task
    def invalid_session_id(self):
        with self.client.post("/api/v1/bookings",
            json={"session_id": -5},
            headers=self.headers,
            catch_response=True
        ) as resp:
            if resp.status_code == 422:
                resp.success()
            else:
                resp.failure(f"Expected 422, got {resp.status_code}")

    @tag("edge")
    @task
    def out_of_range_credits(self):
        with self.client.post("/api/v1/payments/checkout",
            json={"credits": random.choice([0, 10001, 999999])},
            headers=self.headers,
            catch_response=True
        ) as resp:
            if resp.status_code in [400, 422]:
                resp.success()
            else:
                resp.failure(f"Expected 400/422, got {resp.status_code}")

    @tag("edge")
    @task
    def unsigned_webhook(self):
        with self.client.post("/api/v1/payments/webhook",
            data='{"id": "evt_fake", "type": "checkout.session.completed"}',
            headers={"Stripe-Signature": "t=0,v1=bogus"},
            catch_response=True
        ) as resp:
            if resp.status_code == 400:
                resp.success()
            else:
                resp.failure(f"Expected 400, got {resp.status_code}")

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post("/api/v1/bookings",
            data="not json at all",
            headers=self.headers,
            catch_response=True
        ) as resp:
            if resp.status_code in [400, 422]:
                resp.success()
            else:
                resp.failure(f"Expected 400/422, got {resp.status_code}")

    @tag("edge")
    @task
    def missing_auth(self):
        with self.client.post("/api/v1/bookings",
            json={"session_id": HOT_SESSION_ID},
            catch_response=True
        ) as resp:
            if resp.status_code == 401:
                resp.success()
            else:
                resp.failure(f"Expected 401, got {resp.status_code}")


class ChurnUser(HttpUser):
    """
    TEST 4: Churn - book then cancel the same session

    Run: locust -f locustfile.py --tags churn -u 50 -r 10 --run-time 60s

    After test, booked_count for the churn session equals the number of
    CONFIRMED rows; cancelled seats were released exactly once.
    """
    wait_time = between(0.2, 1)

    def on_start(self):
        self.headers = auth_headers()

    @tag("churn")
    @task
    def book_and_cancel(self):
        with self.client.post("/api/v1/bookings",
            json={"session_id": CHURN_SESSION_ID},
            headers=self.headers,
            name="/api/v1/bookings [churn]",
            catch_response=True
        ) as resp:
            if resp.status_code == 409:
                resp.success()  # Still holding a seat from a previous round
                return
            if resp.status_code != 201:
                resp.failure(f"Unexpected: {resp.status_code}")
                return
            booking_id = resp.json()["id"]

        with self.client.post(f"/api/v1/bookings/{booking_id}/cancel",
            headers=self.headers,
            name="/api/v1/bookings/[id]/cancel",
            catch_response=True
        ) as resp:
            if resp.status_code == 200:
                resp.success()
            else:
                resp.failure(f"Cancel failed: {resp.status_code}")
