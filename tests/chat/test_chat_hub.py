import asyncio
import time
import unittest

from reliable_chat.chat import ResyncState, SessionState
from reliable_chat.chat.hub import DISCONNECT_NOTICE
from reliable_chat.errors import StorageUnavailable
from reliable_chat.storage import MessageLog
from tests.chat.base import ChatHubTestCase, RecordingTransport, settle


class _SlowLog(MessageLog):
    def append(self, content: str, client_offset: str | None = None) -> int:
        time.sleep(0.2)
        return super().append(content, client_offset)


class _FlakyLog(MessageLog):
    def __init__(self, *args, failures: int = 1, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures

    def append(self, content: str, client_offset: str | None = None) -> int:
        if self.failures > 0:
            self.failures -= 1
            raise StorageUnavailable("disk I/O error")
        return super().append(content, client_offset)


class ChatHubTests(ChatHubTestCase):
    def test_fresh_connect_on_empty_log_goes_live(self) -> None:
        transport = RecordingTransport()

        async def scenario():
            session = await self._hub.connect(transport)
            state = (session.state, session.resync_state)
            await self._hub.disconnect(session, "done")
            return state

        state = asyncio.run(scenario())
        self.assertEqual((SessionState.ACTIVE, ResyncState.LIVE), state)
        self.assertEqual([], transport.delivered)

    def test_submit_is_acknowledged_and_broadcast_to_everyone(self) -> None:
        sender = RecordingTransport()
        other = RecordingTransport()

        async def scenario():
            s1 = await self._hub.connect(sender)
            s2 = await self._hub.connect(other)
            outcome = await self._hub.submit(s1, "hello", "abc-1")
            await settle()
            await self._hub.disconnect(s1)
            await self._hub.disconnect(s2)
            return outcome

        outcome = asyncio.run(scenario())
        self.assertTrue(outcome.acknowledged)
        self.assertEqual(1, outcome.sequence_number)
        self.assertFalse(outcome.duplicate)
        self.assertEqual([("hello", 1)], sender.delivered)
        self.assertEqual([("hello", 1)], other.delivered)

    def test_resubmit_is_acknowledged_without_second_broadcast(self) -> None:
        transport = RecordingTransport()

        async def scenario():
            session = await self._hub.connect(transport)
            first = await self._hub.submit(session, "hello", "abc-1")
            second = await self._hub.submit(session, "hello", "abc-1")
            await settle()
            await self._hub.disconnect(session)
            return first, second

        first, second = asyncio.run(scenario())
        self.assertTrue(first.acknowledged)
        self.assertTrue(second.acknowledged)
        self.assertTrue(second.duplicate)
        self.assertIsNone(second.sequence_number)
        self.assertEqual([("hello", 1)], transport.delivered)
        self.assertEqual(1, self._log.count())

    def test_reconnect_replays_only_missing_records(self) -> None:
        self.seed(5)
        transport = RecordingTransport()

        async def scenario():
            session = await self._hub.connect(transport, last_known_sequence=3)
            await self._hub.disconnect(session)

        asyncio.run(scenario())
        self.assertEqual([("m4", 4), ("m5", 5)], transport.delivered)

    def test_client_sequence_ahead_of_log_still_receives_live_messages(self) -> None:
        self.seed(2)
        stale = RecordingTransport()
        talker = RecordingTransport()

        async def scenario():
            behind = await self._hub.connect(stale, last_known_sequence=10)
            speaker = await self._hub.connect(talker, transport_recovered=True)
            await self._hub.submit(speaker, "live", "live-1")
            await settle()
            await self._hub.disconnect(behind)
            await self._hub.disconnect(speaker)

        asyncio.run(scenario())
        self.assertEqual([("live", 3)], stale.delivered)
        self.assertEqual([("live", 3)], talker.delivered)

    def test_recovered_session_with_high_sequence_still_receives_live_messages(self) -> None:
        transport = RecordingTransport()

        async def scenario():
            session = await self._hub.connect(transport, last_known_sequence=50, transport_recovered=True)
            await self._hub.submit(session, "fresh", "fresh-1")
            await settle()
            await self._hub.disconnect(session)

        asyncio.run(scenario())
        self.assertEqual([("fresh", 1)], transport.delivered)

    def test_absent_last_sequence_replays_whole_log(self) -> None:
        self.seed(3)
        transport = RecordingTransport()

        async def scenario():
            session = await self._hub.connect(transport, last_known_sequence=None)
            await self._hub.disconnect(session)

        asyncio.run(scenario())
        self.assertEqual([1, 2, 3], transport.sequences)

    def test_transport_recovered_skips_replay(self) -> None:
        self.seed(4)
        transport = RecordingTransport()

        async def scenario():
            session = await self._hub.connect(transport, last_known_sequence=0, transport_recovered=True)
            outcome = await self._hub.submit(session, "live", "live-1")
            await settle()
            await self._hub.disconnect(session)
            return outcome

        outcome = asyncio.run(scenario())
        self.assertEqual(5, outcome.sequence_number)
        self.assertEqual([("live", 5)], transport.delivered)

    def test_disconnect_announces_to_remaining_sessions(self) -> None:
        leaving = RecordingTransport()
        staying = RecordingTransport()

        async def scenario():
            s1 = await self._hub.connect(leaving)
            s2 = await self._hub.connect(staying)
            await self._hub.disconnect(s1, "client closed")
            await settle()
            late = await self._hub.submit(s1, "too late", "late-1")
            count = self._hub.session_count
            await self._hub.disconnect(s2)
            return s1.state, late, count

        state, late, count = asyncio.run(scenario())
        self.assertEqual(SessionState.DISCONNECTED, state)
        self.assertFalse(late.acknowledged)
        self.assertEqual(1, count)
        self.assertEqual([DISCONNECT_NOTICE], staying.notices)
        self.assertEqual([], leaving.notices)
        self.assertEqual(0, self._log.count())

    def test_concurrent_submissions_reach_every_session_in_log_order(self) -> None:
        first = RecordingTransport()
        second = RecordingTransport()

        async def scenario():
            s1 = await self._hub.connect(first)
            s2 = await self._hub.connect(second)
            submissions = [
                self._hub.submit(s1 if i % 2 else s2, f"msg {i}", f"offset-{i}") for i in range(20)
            ]
            outcomes = await asyncio.gather(*submissions)
            await settle(0.1)
            await self._hub.disconnect(s1)
            await self._hub.disconnect(s2)
            return outcomes

        outcomes = asyncio.run(scenario())
        self.assertEqual(list(range(1, 21)), sorted(o.sequence_number for o in outcomes))
        self.assertEqual(list(range(1, 21)), first.sequences)
        self.assertEqual(list(range(1, 21)), second.sequences)

    def test_concurrent_retries_of_same_offset_store_once(self) -> None:
        transport = RecordingTransport()

        async def scenario():
            session = await self._hub.connect(transport)
            outcomes = await asyncio.gather(*[self._hub.submit(session, "dup", "same-1") for _ in range(5)])
            await settle()
            await self._hub.disconnect(session)
            return outcomes

        outcomes = asyncio.run(scenario())
        self.assertTrue(all(o.acknowledged for o in outcomes))
        self.assertEqual(1, sum(1 for o in outcomes if not o.duplicate))
        self.assertEqual([("dup", 1)], transport.delivered)


class StorageFailureTests(ChatHubTestCase):
    def make_log(self) -> MessageLog:
        return _FlakyLog(":memory:", failures=1)

    def test_failed_write_is_rejected_and_retry_succeeds(self) -> None:
        transport = RecordingTransport()

        async def scenario():
            session = await self._hub.connect(transport)
            rejected = await self._hub.submit(session, "hello", "abc-1")
            retried = await self._hub.submit(session, "hello", "abc-1")
            await settle()
            await self._hub.disconnect(session)
            return rejected, retried

        rejected, retried = asyncio.run(scenario())
        self.assertFalse(rejected.acknowledged)
        self.assertEqual("storage unavailable", rejected.reason)
        self.assertTrue(retried.acknowledged)
        self.assertEqual(1, retried.sequence_number)
        self.assertEqual([("hello", 1)], transport.delivered)


class CancelledSubmitTests(ChatHubTestCase):
    def make_log(self) -> MessageLog:
        return _SlowLog(":memory:")

    def test_cancelled_submit_is_still_broadcast(self) -> None:
        watcher = RecordingTransport()
        sender = RecordingTransport()

        async def scenario():
            watching = await self._hub.connect(watcher, transport_recovered=True)
            sending = await self._hub.connect(sender, transport_recovered=True)
            first = asyncio.create_task(self._hub.submit(sending, "first", "c-1"))
            await settle()
            first.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await first
            second = await self._hub.submit(sending, "second", "c-2")
            await settle()
            await self._hub.disconnect(watching)
            await self._hub.disconnect(sending)
            return second

        second = asyncio.run(scenario())
        self.assertEqual(2, second.sequence_number)
        self.assertEqual(2, self._log.count())
        self.assertEqual([("first", 1), ("second", 2)], watcher.delivered)
        self.assertEqual([1, 2], sender.sequences)


class OutboxOverflowTests(ChatHubTestCase):
    outbox_max_size = 1

    def test_slow_session_is_closed_without_affecting_others(self) -> None:
        stuck = RecordingTransport(gate=asyncio.Event())
        healthy = RecordingTransport()

        async def scenario():
            slow = await self._hub.connect(stuck, transport_recovered=True)
            fast = await self._hub.connect(healthy, transport_recovered=True)
            for i in range(3):
                await self._hub.submit(fast, f"m{i}", f"o-{i}")
                await settle(0.02)
            await settle()
            overflowed = slow.overflowed
            await self._hub.disconnect(slow, "overflow")
            await self._hub.disconnect(fast)
            return overflowed

        overflowed = asyncio.run(scenario())
        self.assertTrue(overflowed)
        self.assertEqual("outbox overflow", stuck.closed_reason)
        self.assertEqual([1, 2, 3], healthy.sequences)


if __name__ == "__main__":
    unittest.main()
