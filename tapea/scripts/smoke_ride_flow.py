"""End-to-end smoke test for one ride against a running coordination server.

Prerequisites:
1. The API and realtime server must be reachable at TAPEA_API_URL / TAPEA_SOCKET_URL.
2. A driver access code is needed: export TAPEA_SMOKE_DRIVER_CODE=123456.
3. Install the package once: `pip install -e .`.

The script will:
- Log the driver in, put them online and join the driver room.
- Submit a rider request and wait for it on the driver's order board.
- Accept it, then drive it through arrived -> inprogress -> completed.
- Confirm a cash payment from the driver side and wait for the rider to see it.
"""

from __future__ import annotations

import asyncio
import os
import sys

from tapea.accounts.storage import CredentialStore, MemoryStore
from tapea.app import RideApp
from tapea.exceptions import RideSyncError
from tapea.rides.models import ARRIVED, COMPLETED, INPROGRESS, AddressField, RideRequest
from tapea.rides.pricing import calculate_price, get_ride_option
from tapea.services.ride_management import SEARCH_FOUND
from tapea.settings import configure_logging

DRIVER_CODE = os.environ.get("TAPEA_SMOKE_DRIVER_CODE", "")
STEP_TIMEOUT = float(os.environ.get("TAPEA_SMOKE_TIMEOUT", "30"))


def _build_request() -> RideRequest:
    option = get_ride_option("immediate")
    total, earnings = calculate_price(option, distance_km=8.5)
    return RideRequest(
        addresses=(
            AddressField(id="1", value="Aéroport de Faa'a", type="pickup", lat=-17.5537, lng=-149.6114),
            AddressField(id="2", value="Place To'ata, Papeete", type="destination", lat=-17.5347, lng=-149.5696),
        ),
        ride_option=option,
        passengers=1,
        total_price=total,
        driver_earnings=earnings,
        client_name="Smoke Test",
    )


async def _wait_for(predicate, label: str) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + STEP_TIMEOUT
    while not predicate():
        if loop.time() > deadline:
            raise TimeoutError(f"Timed out waiting for {label}")
        await asyncio.sleep(0.2)


async def main() -> None:
    if not DRIVER_CODE:
        raise SystemExit("Set TAPEA_SMOKE_DRIVER_CODE to a valid driver access code")

    configure_logging()
    rider = RideApp(store=CredentialStore(MemoryStore()))
    driver = RideApp(store=CredentialStore(MemoryStore()))

    try:
        print("[DRIVER] Logging in ...")
        await driver.driver.login(DRIVER_CODE)
        if not await driver.driver.join_and_wait():
            raise RuntimeError("Driver room join refused")
        await driver.driver.set_online(True)
        print(f"[DRIVER] Online (session {driver.driver.session_id})")

        print("[RIDER] Requesting ride ...")
        search = await rider.request_ride(_build_request())
        if search.ride is None:
            raise RuntimeError(f"Ride creation failed: {search.error}")
        ride_id = search.ride.id
        print(f"[RIDER] Ride #{ride_id} created, status={search.status}")

        await _wait_for(
            lambda: any(o.id == ride_id for o in driver.driver.pending_orders),
            "the order on the driver board",
        )
        accepted = await driver.driver.accept_order(ride_id)
        print(f"[DRIVER] Accepted ride #{accepted.id}")

        if await search.wait(timeout=STEP_TIMEOUT) != SEARCH_FOUND:
            raise RuntimeError(f"Rider search ended in {search.status}: {search.error}")
        rider_ride = rider.follow_ride(search)
        driver_ride = driver.drive_ride(accepted)

        for status in (ARRIVED, INPROGRESS, COMPLETED):
            driver_ride.update_status(status)
            await _wait_for(lambda: rider_ride.status == status, f"rider to see {status}")
            print(f"[RIDE] {status}")

        driver_ride.payment.confirm()
        await _wait_for(lambda: rider_ride.payment.is_confirmed, "payment confirmation")
        print(f"[RESULT] Payment: {rider_ride.payment.outcome.summary()}")
    except RideSyncError as e:
        print(f"[ERROR] {e.__class__.__name__}: {e.message}")
        sys.exit(1)
    finally:
        if driver.driver.session_id:
            await driver.driver.set_online(False)
        await rider.close()
        await driver.close()

    print("[DONE] Ride flow check completed.")


if __name__ == "__main__":
    asyncio.run(main())
