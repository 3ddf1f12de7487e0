import asyncio
import inspect
import unittest

from codeloop.cancellation import CancellationToken
from codeloop.errors import OperationCancelled


class CancellationTokenTests(unittest.TestCase):
    def test_cancelled_token_closes_the_coroutine_it_was_given(self) -> None:
        started = []

        async def work() -> str:
            started.append(True)
            return "done"

        async def scenario() -> None:
            token = CancellationToken()
            token.cancel("stop")
            coro = work()
            with self.assertRaises(OperationCancelled):
                await token.run(coro)
            self.assertEqual(inspect.CORO_CLOSED, inspect.getcoroutinestate(coro))

        asyncio.run(scenario())
        self.assertEqual([], started)

    def test_run_returns_the_result(self) -> None:
        async def scenario() -> str:
            async def work() -> str:
                return "done"

            return await CancellationToken().run(work())

        self.assertEqual("done", asyncio.run(scenario()))

    def test_cancel_during_run_stops_the_work(self) -> None:
        async def scenario() -> None:
            token = CancellationToken()
            stopped = asyncio.Event()

            async def work() -> None:
                try:
                    await asyncio.sleep(10)
                finally:
                    stopped.set()

            asyncio.get_running_loop().call_later(0.01, token.cancel, "interrupted")
            with self.assertRaises(OperationCancelled):
                await token.run(work())
            self.assertTrue(stopped.is_set())

        asyncio.run(scenario())

    def test_parent_cancels_children_only(self) -> None:
        async def scenario() -> None:
            parent = CancellationToken()
            child = parent.child()
            child.cancel("child only")
            self.assertFalse(parent.is_cancelled)

            other = parent.child()
            parent.cancel("all")
            self.assertTrue(other.is_cancelled)
            self.assertEqual("all", other.reason)

        asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
