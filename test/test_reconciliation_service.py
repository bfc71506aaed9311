"""
End-to-end reconciliation tests against SQLite with simulated timers.
"""

import asyncio

import pytest

from callrecon.calls.models import CallOutcome, TerminalSource
from callrecon.shared.exceptions import NotFoundError, ValidationError
from callrecon.shared.logging import correlation_id_var


class TestReconcile:
    @pytest.mark.asyncio
    async def test_completed_with_conversation_duration(
        self, service, make_contact, load_state, provider_client
    ) -> None:
        contact = await make_contact(provider_call_id="CA-A")

        result = await service.reconcile(
            {"callId": "CA-A", "status": "completed", "conversationDuration": 125}
        )

        stored, attempts = await load_state(contact.id)
        assert result.applied
        assert result.outcome is CallOutcome.COMPLETED
        assert result.retry_scheduled is False
        assert result.duration_source == "callback_conversation_duration"
        assert result.contact.duration == 125
        assert stored.status is CallOutcome.COMPLETED
        assert stored.duration == 125
        assert stored.attempts == 1
        assert len(attempts) == 1
        assert "CA-A" not in service.retries
        assert provider_client.calls == []

    @pytest.mark.asyncio
    async def test_retries_exhaust_and_duration_stays_null(
        self, service, make_contact, load_state, provider_client, clock
    ) -> None:
        contact = await make_contact(provider_call_id="CA-B")
        provider_client.responses = [{"ConversationDuration": "0", "Duration": "0"}] * 4

        result = await service.reconcile({"CallSid": "CA-B", "Status": "completed"})

        assert result.retry_scheduled is True
        assert result.contact.duration is None

        clock.release()
        await service.retries.join()

        stored, attempts = await load_state(contact.id)
        assert clock.sleeps == [30.0, 60.0, 120.0]
        assert clock.elapsed >= 210
        assert len(provider_client.calls) == 4
        assert stored.duration is None
        assert attempts[0].duration is None
        assert "CA-B" not in service.retries

    @pytest.mark.asyncio
    async def test_retry_fills_duration(
        self, service, make_contact, load_state, provider_client, clock
    ) -> None:
        contact = await make_contact(provider_call_id="CA-R")
        provider_client.responses = [
            {"Duration": "0"},
            {"Duration": "0"},
            {"ConversationDuration": "64"},
        ]

        await service.reconcile({"CallSid": "CA-R", "Status": "completed"})
        clock.release()
        await service.retries.join()

        stored, attempts = await load_state(contact.id)
        assert clock.sleeps == [30.0, 60.0]
        assert stored.duration == 64
        assert attempts[0].duration == 64
        assert attempts[0].duration_source == "provider_conversation_duration"
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_no_retry_for_non_completed_outcomes(
        self, service, make_contact, provider_client
    ) -> None:
        await make_contact(provider_call_id="CA-N")
        provider_client.responses = [{"Duration": "0"}]

        result = await service.reconcile({"CallSid": "CA-N", "Status": "no-answer"})

        assert result.outcome is CallOutcome.NO_ANSWER
        assert result.retry_scheduled is False
        assert len(service.retries) == 0

    @pytest.mark.asyncio
    async def test_switched_off_from_second_leg(
        self, service, make_contact, load_state
    ) -> None:
        contact = await make_contact(provider_call_id="CA-C")

        result = await service.reconcile(
            {
                "callId": "CA-C",
                "status": "failed",
                "direction": "outbound",
                "conversationDuration": 0,
                "legs": [{}, {"status": "failed"}],
            }
        )

        stored, _ = await load_state(contact.id)
        assert result.outcome is CallOutcome.SWITCHED_OFF
        assert stored.status is CallOutcome.SWITCHED_OFF

    @pytest.mark.asyncio
    async def test_duplicate_delivery(self, service, make_contact, load_state) -> None:
        contact = await make_contact(provider_call_id="CA-D")
        payload = {"CallSid": "CA-D", "Status": "busy", "Duration": "4"}

        first = await service.reconcile(payload)
        second = await service.reconcile(payload)

        stored, attempts = await load_state(contact.id)
        assert len(attempts) == 1
        assert stored.attempts == 1
        assert first.contact.model_dump(exclude={"last_attempt"}) == second.contact.model_dump(
            exclude={"last_attempt"}
        )
        assert first.call_attempt.model_dump() == second.call_attempt.model_dump()

    @pytest.mark.asyncio
    async def test_resolves_contact_by_token(self, service, make_contact, load_state) -> None:
        contact = await make_contact(provider_call_id=None)

        result = await service.reconcile(
            {
                "CallSid": "CA-T",
                "Status": "completed",
                "ConversationDuration": "9",
                "CustomField": f"contact_id:{contact.id}",
            }
        )

        stored, _ = await load_state(contact.id)
        assert result.contact.id == contact.id
        assert stored.provider_call_id == "CA-T"
        assert stored.duration == 9

    @pytest.mark.asyncio
    async def test_redial_matched_by_token_updates_contact(
        self, service, make_contact, load_state
    ) -> None:
        contact = await make_contact(provider_call_id="CA-1")
        token = f"contact_id:{contact.id}"
        await service.reconcile({"CallSid": "CA-1", "Status": "busy"})

        result = await service.reconcile(
            {
                "CallSid": "CA-2",
                "Status": "completed",
                "ConversationDuration": "30",
                "CustomField": token,
            }
        )

        stored, attempts = await load_state(contact.id)
        assert result.call_attempt.attempt_no == 2
        assert stored.status is CallOutcome.COMPLETED
        assert stored.duration == 30
        assert stored.provider_call_id == "CA-2"
        assert stored.attempts == 2
        assert [(a.provider_call_id, a.status) for a in attempts] == [
            ("CA-1", CallOutcome.BUSY),
            ("CA-2", CallOutcome.COMPLETED),
        ]

        # A late correction for the first call stays on its own attempt.
        await service.reconcile(
            {"CallSid": "CA-1", "Status": "no-answer", "CustomField": token}
        )

        stored, attempts = await load_state(contact.id)
        assert attempts[0].status is CallOutcome.NO_ANSWER
        assert stored.status is CallOutcome.COMPLETED
        assert stored.provider_call_id == "CA-2"
        assert stored.attempts == 2

    @pytest.mark.asyncio
    async def test_infinite_duration_is_ignored(
        self, service, make_contact, load_state
    ) -> None:
        contact = await make_contact(provider_call_id="CA-I")

        result = await service.reconcile(
            {
                "CallSid": "CA-I",
                "Status": "completed",
                "ConversationDuration": "inf",
                "Duration": "12",
            }
        )

        stored, _ = await load_state(contact.id)
        assert result.duration_source == "callback_duration"
        assert stored.duration == 12

    @pytest.mark.asyncio
    async def test_validation_error(self, service) -> None:
        with pytest.raises(ValidationError):
            await service.reconcile({"Status": "completed"})

    @pytest.mark.asyncio
    async def test_unknown_contact(self, service) -> None:
        with pytest.raises(NotFoundError):
            await service.reconcile({"CallSid": "CA-404", "Status": "completed"})

    @pytest.mark.asyncio
    async def test_correlation_id_reset_after_request(self, service, make_contact) -> None:
        await make_contact(provider_call_id="CA-L")

        await service.reconcile({"CallSid": "CA-L", "Status": "busy"})

        assert correlation_id_var.get() is None


class TestStaleCalls:
    @pytest.mark.asyncio
    async def test_no_callback_within_window(
        self, service, make_contact, load_state, clock
    ) -> None:
        contact = await make_contact()

        placed = await service.track_placement(contact.id, "CA-E", user_id=3)
        assert placed.outcome is CallOutcome.INITIATED
        assert service.monitor.is_armed("CA-E")

        clock.release()
        await service.monitor.join()

        stored, attempts = await load_state(contact.id)
        assert clock.sleeps == [120.0]
        assert stored.status is CallOutcome.FAILED
        assert stored.duration == 0
        assert stored.attempts == 1
        assert attempts[0].terminal_source is TerminalSource.TIMEOUT
        assert attempts[0].user_id == 3

    @pytest.mark.asyncio
    async def test_callback_first_disarms_monitor(
        self, service, make_contact, load_state, clock
    ) -> None:
        contact = await make_contact()
        await service.track_placement(contact.id, "CA-F")

        await service.reconcile(
            {"CallSid": "CA-F", "Status": "completed", "ConversationDuration": "33"}
        )

        assert not service.monitor.is_armed("CA-F")
        clock.release()
        await service.monitor.join()

        stored, _ = await load_state(contact.id)
        assert stored.status is CallOutcome.COMPLETED
        assert stored.duration == 33
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_timeout_after_callback_is_noop(
        self, service, make_contact, load_state
    ) -> None:
        contact = await make_contact()
        await service.track_placement(contact.id, "CA-G")
        await service.reconcile({"CallSid": "CA-G", "Status": "busy"})

        result = await service.force_timeout(contact.id, "CA-G")

        stored, _ = await load_state(contact.id)
        assert result is not None and result.applied is False
        assert stored.status is CallOutcome.BUSY
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_callback_after_timeout_is_not_applied(
        self, service, make_contact, load_state, clock
    ) -> None:
        contact = await make_contact()
        await service.track_placement(contact.id, "CA-H")
        clock.release()
        await service.monitor.join()

        result = await service.reconcile(
            {"CallSid": "CA-H", "Status": "completed", "ConversationDuration": "20"}
        )

        stored, _ = await load_state(contact.id)
        assert result.applied is False
        assert result.retry_scheduled is False
        assert stored.status is CallOutcome.FAILED
        assert stored.duration == 0
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_placed_attempt_user_drives_credentials(
        self, service, make_contact, credential_resolver, provider_client
    ) -> None:
        contact = await make_contact()
        await service.track_placement(contact.id, "CA-U", user_id=11)
        provider_client.responses = [{"ConversationDuration": "15"}]

        result = await service.reconcile({"CallSid": "CA-U", "Status": "completed"})

        assert result.contact.duration == 15
        assert credential_resolver.user_ids == [11]


class TestRetryLifecycle:
    @pytest.mark.asyncio
    async def test_new_terminal_callback_cancels_pending_retry(
        self, service, make_contact, load_state, provider_client, clock
    ) -> None:
        contact = await make_contact(provider_call_id="CA-S")

        await service.reconcile({"CallSid": "CA-S", "Status": "completed"})
        assert "CA-S" in service.retries

        await service.reconcile(
            {"CallSid": "CA-S", "Status": "completed", "ConversationDuration": "70"}
        )
        assert "CA-S" not in service.retries

        clock.release()
        await service.retries.join()

        stored, _ = await load_state(contact.id)
        assert stored.duration == 70
        assert stored.attempts == 1
        assert len(provider_client.calls) == 1


    @pytest.mark.asyncio
    async def test_retry_after_redial_updates_contact_duration(
        self, service, make_contact, load_state, provider_client, clock
    ) -> None:
        contact = await make_contact()
        await service.track_placement(contact.id, "CA-1")
        await service.reconcile(
            {"CallSid": "CA-1", "Status": "completed", "ConversationDuration": "200"}
        )
        await service.track_placement(contact.id, "CA-2")
        provider_client.responses = [{"Duration": "0"}, {"ConversationDuration": "45"}]

        result = await service.reconcile({"CallSid": "CA-2", "Status": "completed"})

        assert result.retry_scheduled is True
        assert result.contact.duration is None

        clock.release()
        await service.retries.join()

        stored, attempts = await load_state(contact.id)
        assert clock.sleeps[-1] == 30.0
        assert stored.provider_call_id == "CA-2"
        assert stored.duration == 45
        assert [(a.provider_call_id, a.duration) for a in attempts] == [
            ("CA-1", 200),
            ("CA-2", 45),
        ]


class TestConcurrentDelivery:
    @pytest.mark.asyncio
    async def test_duplicate_callbacks_at_once(self, service, make_contact, load_state) -> None:
        contact = await make_contact(provider_call_id="CA-X")
        payload = {"CallSid": "CA-X", "Status": "completed", "ConversationDuration": "41"}

        results = await asyncio.gather(
            service.reconcile(dict(payload)),
            service.reconcile(dict(payload)),
        )

        stored, attempts = await load_state(contact.id)
        assert all(r.applied for r in results)
        assert len(attempts) == 1
        assert attempts[0].status is CallOutcome.COMPLETED
        assert stored.attempts == 1
        assert stored.duration == 41

    @pytest.mark.asyncio
    async def test_duplicate_callbacks_for_unplaced_call(
        self, service, make_contact, load_state
    ) -> None:
        contact = await make_contact(provider_call_id=None)
        payload = {
            "CallSid": "CA-Y",
            "Status": "busy",
            "CustomField": f"contact_id:{contact.id}",
        }

        await asyncio.gather(*(service.reconcile(dict(payload)) for _ in range(3)))

        stored, attempts = await load_state(contact.id)
        assert len(attempts) == 1
        assert stored.attempts == 1
        assert stored.status is CallOutcome.BUSY
        assert stored.provider_call_id == "CA-Y"

    @pytest.mark.asyncio
    async def test_callback_and_timeout_at_once(
        self, service, make_contact, load_state
    ) -> None:
        contact = await make_contact()
        await service.track_placement(contact.id, "CA-Z")

        callback, timeout = await asyncio.gather(
            service.reconcile(
                {"CallSid": "CA-Z", "Status": "completed", "ConversationDuration": "18"}
            ),
            service.force_timeout(contact.id, "CA-Z"),
        )

        stored, attempts = await load_state(contact.id)
        assert timeout is not None
        assert callback.applied != timeout.applied
        assert len(attempts) == 1
        assert stored.attempts == 1
        if attempts[0].terminal_source is TerminalSource.CALLBACK:
            assert (stored.status, stored.duration) == (CallOutcome.COMPLETED, 18)
        else:
            assert attempts[0].terminal_source is TerminalSource.TIMEOUT
            assert (stored.status, stored.duration) == (CallOutcome.FAILED, 0)
        assert stored.status is attempts[0].status


class TestDurationSync:
    @pytest.mark.asyncio
    async def test_backfills_missing_durations(
        self, service, make_contact, load_state, provider_client, clock
    ) -> None:
        first = await make_contact(provider_call_id="CA-1", phone="+919800000011")
        second = await make_contact(provider_call_id="CA-2", phone="+919800000012")
        await service.reconcile({"CallSid": "CA-1", "Status": "completed"})
        await service.reconcile({"CallSid": "CA-2", "Status": "completed"})
        await service.retries.shutdown()

        provider_client.responses = [
            {"ConversationDuration": "12"},
            {"ConversationDuration": "34"},
        ]
        updated = await service.sync_missing_durations(limit=10, max_age_days=7)

        stored_first, _ = await load_state(first.id)
        stored_second, _ = await load_state(second.id)
        assert updated == 2
        assert {stored_first.duration, stored_second.duration} == {12, 34}

    @pytest.mark.asyncio
    async def test_skips_calls_with_active_retry(
        self, service, make_contact, provider_client
    ) -> None:
        await make_contact(provider_call_id="CA-3")
        await service.reconcile({"CallSid": "CA-3", "Status": "completed"})
        calls_before = len(provider_client.calls)

        updated = await service.sync_missing_durations()

        assert updated == 0
        assert len(provider_client.calls) == calls_before
