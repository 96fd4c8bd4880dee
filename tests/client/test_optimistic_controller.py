"""
OptimisticRegistrationController tests.

GatedGateway holds the server answer until the test releases it, so the
SPECULATING state can be observed before the server confirms.
"""

import asyncio

import httpx
import pytest

from services.client.app.controller import OptimisticRegistrationController, RegistrationState
from services.client.app.gateway import RegistrationGateway
from services.client.app.results import FAILURE_MESSAGES, RegistrationError, RegistrationResult

EVENT_ID = "7f1f3c9e-5a0b-4c55-9c1e-2d7f7c1b9a10"


class GatedGateway:
    def __init__(self, result: RegistrationResult | None = None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.release = asyncio.Event()
        self.calls = 0

    async def register(self, event_id):
        self.calls += 1
        await self.release.wait()
        if self.error:
            raise self.error
        return self.result


def _confirmed() -> RegistrationResult:
    return RegistrationResult.registered({"registered_count": 1})


def _rejected(error: RegistrationError) -> RegistrationResult:
    return RegistrationResult.failed(error, "from server")


class TestSpeculation:
    @pytest.mark.asyncio
    async def test_speculative_decrement_then_confirm(self):
        gateway = GatedGateway(_confirmed())
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=3)

        task = controller.request_registration()

        # visible before the server call has even started
        assert controller.speculative_available == 2
        assert controller.authoritative_available == 3
        assert controller.registration_state == RegistrationState.SPECULATING
        assert controller.is_registered is False
        assert gateway.calls == 0

        gateway.release.set()
        await task

        assert controller.registration_state == RegistrationState.CONFIRMED
        assert controller.authoritative_available == 2
        assert controller.speculative_available == 2
        assert controller.is_registered is True
        assert controller.failure is None

    @pytest.mark.asyncio
    async def test_lost_race_rolls_back(self):
        gateway = GatedGateway(_rejected(RegistrationError.EVENT_FULL))
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=3)

        task = controller.request_registration()
        assert controller.speculative_available == 2

        gateway.release.set()
        result = await task

        assert result.error == RegistrationError.EVENT_FULL
        assert controller.speculative_available == 3
        assert controller.authoritative_available == 3
        assert controller.registration_state == RegistrationState.ROLLED_BACK
        assert controller.failure == RegistrationError.EVENT_FULL
        assert controller.failure_message == FAILURE_MESSAGES[RegistrationError.EVENT_FULL]

    @pytest.mark.asyncio
    async def test_last_spot_never_goes_negative(self):
        gateway = GatedGateway(_confirmed())
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=1)

        task = controller.request_registration()
        assert controller.speculative_available == 0
        assert controller.label == "Registering..."

        gateway.release.set()
        await task
        assert controller.authoritative_available == 0
        assert controller.label == "Registered!"


class TestAtMostOneAttempt:
    @pytest.mark.asyncio
    async def test_second_request_while_pending_is_ignored(self):
        gateway = GatedGateway(_confirmed())
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=5)

        task = controller.request_registration()
        assert controller.request_registration() is None
        assert controller.speculative_available == 4

        gateway.release.set()
        await task
        assert gateway.calls == 1
        assert controller.authoritative_available == 4

    @pytest.mark.asyncio
    async def test_no_attempt_after_confirmation(self):
        gateway = GatedGateway(_confirmed())
        gateway.release.set()
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=5)

        await controller.request_registration()

        assert controller.request_registration() is None
        assert gateway.calls == 1

    @pytest.mark.asyncio
    async def test_new_attempt_allowed_after_rollback(self):
        gateway = GatedGateway(_rejected(RegistrationError.CONTENTION))
        gateway.release.set()
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=2)

        await controller.request_registration()
        assert controller.registration_state == RegistrationState.ROLLED_BACK
        assert controller.failure.retry_later is True

        gateway.result = _confirmed()
        await controller.request_registration()

        assert controller.registration_state == RegistrationState.CONFIRMED
        assert controller.failure is None
        assert controller.authoritative_available == 1
        assert gateway.calls == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("spots, accepts", [(0, True), (3, False)])
    async def test_disabled_when_nothing_to_register(self, spots, accepts):
        gateway = GatedGateway(_confirmed())
        controller = OptimisticRegistrationController(
            gateway, EVENT_ID, available_spots=spots, accepts_registration=accepts
        )

        assert controller.can_register is False
        assert controller.request_registration() is None
        assert controller.registration_state == RegistrationState.IDLE
        assert gateway.calls == 0


class TestFailureModes:
    @pytest.mark.asyncio
    async def test_timeout_rolls_back_as_transport_failure(self):
        gateway = GatedGateway(_confirmed())  # never released
        controller = OptimisticRegistrationController(
            gateway, EVENT_ID, available_spots=3, timeout=0.01
        )

        result = await controller.request_registration()

        assert result.error == RegistrationError.TRANSPORT_FAILURE
        assert controller.registration_state == RegistrationState.ROLLED_BACK
        assert controller.speculative_available == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("started", [True, False])
    async def test_cancelled_task_rolls_back(self, started):
        gateway = GatedGateway(_confirmed())  # never released
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=3)
        seen = []
        controller.subscribe(lambda c: seen.append(c.registration_state))

        task = controller.request_registration()
        if started:
            await asyncio.sleep(0)
            assert gateway.calls == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert controller.registration_state == RegistrationState.ROLLED_BACK
        assert controller.speculative_available == 3
        assert controller.failure == RegistrationError.TRANSPORT_FAILURE
        assert controller.failure.retry_later is True
        assert seen == [RegistrationState.SPECULATING, RegistrationState.ROLLED_BACK]

        controller.refresh(5, True)
        assert controller.speculative_available == 5
        assert controller.can_register is True

    @pytest.mark.asyncio
    async def test_gateway_exception_rolls_back(self):
        gateway = GatedGateway(error=RuntimeError("boom"))
        gateway.release.set()
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=3)

        await controller.request_registration()

        assert controller.failure == RegistrationError.TRANSPORT_FAILURE
        assert controller.speculative_available == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            RegistrationError.ALREADY_REGISTERED,
            RegistrationError.EVENT_NOT_PUBLISHED,
            RegistrationError.NOT_FOUND,
        ],
    )
    async def test_business_failures_are_surfaced(self, error):
        gateway = GatedGateway(_rejected(error))
        gateway.release.set()
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=3)

        await controller.request_registration()

        assert controller.failure == error
        assert controller.failure_message == FAILURE_MESSAGES[error]
        assert controller.failure.retry_later is False


class TestPresentationHooks:
    @pytest.mark.asyncio
    async def test_listeners_see_every_transition(self):
        gateway = GatedGateway(_confirmed())
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=3)
        seen = []
        controller.subscribe(
            lambda c: seen.append((c.registration_state, c.speculative_available, c.is_registered))
        )

        task = controller.request_registration()
        gateway.release.set()
        await task

        assert seen == [
            (RegistrationState.SPECULATING, 2, False),
            (RegistrationState.CONFIRMED, 2, True),
        ]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        gateway = GatedGateway(_confirmed())
        gateway.release.set()
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=3)
        seen = []
        unsubscribe = controller.subscribe(seen.append)
        unsubscribe()

        await controller.request_registration()
        assert seen == []

    @pytest.mark.asyncio
    async def test_refresh_is_ignored_while_in_flight(self):
        gateway = GatedGateway(_confirmed())
        controller = OptimisticRegistrationController(gateway, EVENT_ID, available_spots=3)

        task = controller.request_registration()
        controller.refresh(10, True)
        assert controller.authoritative_available == 3

        gateway.release.set()
        await task
        controller.refresh(7, True)
        assert controller.authoritative_available == 7
        assert controller.speculative_available == 7

    def test_labels(self):
        gateway = GatedGateway(_confirmed())
        assert OptimisticRegistrationController(gateway, EVENT_ID, 4).label == "Register (4 spots left)"
        assert OptimisticRegistrationController(gateway, EVENT_ID, 0).label == "Sold out"
        assert OptimisticRegistrationController(gateway, EVENT_ID, 4, False).label == "Not available"

    def test_from_event_starts_confirmed_when_already_registered(self):
        event = {"id": EVENT_ID, "available_spots": 2, "status": "published", "is_registered": True}
        controller = OptimisticRegistrationController.from_event(GatedGateway(), event)

        assert controller.registration_state == RegistrationState.CONFIRMED
        assert controller.can_register is False


class TestAgainstEventService:
    @pytest.mark.asyncio
    async def test_two_clients_race_for_last_spot(self, event_app, make_event):
        event = await make_event(capacity=1)
        transport = httpx.ASGITransport(app=event_app)

        controllers = [
            OptimisticRegistrationController(
                RegistrationGateway("http://event-service", user, transport=transport),
                event["id"],
                available_spots=event["available_spots"],
            )
            for user in ("alice", "bob")
        ]

        tasks = [c.request_registration() for c in controllers]
        assert [c.speculative_available for c in controllers] == [0, 0]
        await asyncio.gather(*tasks)

        states = sorted(c.registration_state.value for c in controllers)
        assert states == ["confirmed", "rolled_back"]
        loser = next(c for c in controllers if not c.is_registered)
        assert loser.failure == RegistrationError.EVENT_FULL
        assert loser.speculative_available == 1

    @pytest.mark.asyncio
    async def test_controller_from_fetched_event(self, event_app, make_event):
        event = await make_event(capacity=3)
        gateway = RegistrationGateway(
            "http://event-service", "alice", transport=httpx.ASGITransport(app=event_app)
        )

        controller = OptimisticRegistrationController.from_event(
            gateway, await gateway.fetch_event(event["id"])
        )
        await controller.request_registration()
        assert controller.authoritative_available == 2

        refetched = OptimisticRegistrationController.from_event(
            gateway, await gateway.fetch_event(event["id"])
        )
        assert refetched.is_registered is True
        assert refetched.authoritative_available == 2
