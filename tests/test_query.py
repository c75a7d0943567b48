"""
Remote Watch — State Query Tests

Tests:
  - by-value unwrapping, thrown expressions, malformed responses
  - every failure mode of ask() collapses to the fallback
  - ask_any_context walks contexts in priority order
  - ask_each / ask_all_contexts_merged keep order and dedupe
"""

import os
import sys
import unittest

_here = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.dirname(_here))
sys.path.insert(0, _here)

from channel.errors import ChannelClosed, QueryFailure
from channel.query import StateQuery, unwrap_evaluation
from fakes import (
    EXTENSION_CTX,
    PAGE_CTX,
    PANEL_CTX,
    FakeSocket,
    make_connection,
    remote_error,
    thrown,
    value,
)


class TestUnwrapEvaluation(unittest.TestCase):

    def test_value(self):
        self.assertEqual(unwrap_evaluation({"result": {"type": "number", "value": 3}}), 3)
        self.assertIsNone(unwrap_evaluation({"result": {"type": "undefined"}}))

    def test_thrown(self):
        with self.assertRaises(QueryFailure):
            unwrap_evaluation(thrown()["result"])

    def test_malformed(self):
        for bad in (None, [], {"result": "x"}, {}):
            with self.assertRaises(QueryFailure):
                unwrap_evaluation(bad)


class _QueryCase(unittest.IsolatedAsyncioTestCase):
    """Three contexts (page, extension host, panel) answering per `answers`."""

    contexts = [PAGE_CTX, EXTENSION_CTX, PANEL_CTX]

    def answer(self, expression, context_id):
        table = self.answers.get(expression, {})
        if context_id in table:
            return table[context_id]
        return table.get("*", value(None))

    async def asyncSetUp(self):
        self.answers = {}
        self.sock = FakeSocket(contexts=self.contexts, evaluate=self.answer)
        self.conn, _, _ = make_connection(self.sock)
        await self.conn.connect()
        self.query = StateQuery(self.conn)

    async def asyncTearDown(self):
        await self.conn.disconnect()

    def evaluated_contexts(self):
        return [f["params"].get("contextId") for f in self.sock.sent
                if f["method"] == "Runtime.evaluate"]


class TestAsk(_QueryCase):

    async def test_primary_context_and_params(self):
        self.answers["1+1"] = {"*": value(2)}
        self.assertEqual(await self.query.ask("1+1"), 2)
        params = self.sock.sent[-1]["params"]
        self.assertEqual(params["contextId"], 1)
        self.assertTrue(params["returnByValue"])
        self.assertTrue(params["awaitPromise"])

    async def test_fallback_on_thrown(self):
        self.answers["x"] = {"*": thrown()}
        self.assertEqual(await self.query.ask("x", fallback="fb"), "fb")

    async def test_fallback_on_remote_error(self):
        self.answers["x"] = {"*": remote_error()}
        self.assertFalse(await self.query.ask("x", fallback=False))

    async def test_fallback_on_wrong_type(self):
        self.answers["x"] = {"*": value("yes")}
        self.assertIsNone(await self.query.ask("x", expect=bool))

    async def test_fallback_on_null(self):
        self.assertEqual(await self.query.ask("missing", fallback=[]), [])

    async def test_fallback_when_disconnected(self):
        await self.conn.disconnect()
        self.assertEqual(await self.query.ask("x", fallback=0), 0)

    async def test_fallback_on_timeout(self):
        self.answers["slow"] = {"*": None}
        query = StateQuery(self.conn, timeout=0.05)
        self.assertEqual(await query.ask("slow", fallback="late"), "late")
        self.assertEqual(self.conn.pending_count, 0)

    async def test_strict_evaluate_raises(self):
        self.answers["x"] = {"*": thrown()}
        with self.assertRaises(QueryFailure):
            await self.query.evaluate("x", context_id=1)
        await self.conn.disconnect()
        with self.assertRaises(ChannelClosed):
            await self.query.evaluate("x")


class TestAcrossContexts(_QueryCase):

    async def test_any_context_skips_failures(self):
        self.answers["text"] = {1: thrown(), 2: value("   "), 3: value("from page")}
        result = await self.query.ask_any_context(
            "text", expect=str, accept=lambda v: isinstance(v, str) and bool(v.strip()))
        self.assertEqual(result, "from page")
        self.assertEqual(self.evaluated_contexts(), [1, 2, 3])

    async def test_any_context_stops_at_first_answer(self):
        self.answers["text"] = {"*": value("hi")}
        self.assertEqual(await self.query.ask_any_context("text"), "hi")
        self.assertEqual(self.evaluated_contexts(), [1])

    async def test_any_context_fallback(self):
        self.answers["flag"] = {"*": value(False)}
        self.assertFalse(await self.query.ask_any_context("flag", fallback=False))
        self.assertEqual(len(self.evaluated_contexts()), 3)

    async def test_ask_each_in_priority_order(self):
        self.answers["busy"] = {1: value(True), 2: remote_error(), 3: value(False)}
        self.assertEqual(await self.query.ask_each("busy", expect=bool), [True, None, False])

    async def test_merged_lines(self):
        self.answers["lines"] = {
            1: value(["Reading a.py", "  Editing b.py\r", ""]),
            2: thrown(),
            3: value(["Editing b.py", "Running tests", 7]),
        }
        merged = await self.query.ask_all_contexts_merged("lines")
        self.assertEqual(merged, ["Reading a.py", "Editing b.py", "Running tests"])


class TestNoKnownContexts(unittest.IsolatedAsyncioTestCase):

    async def test_default_context_used(self):
        sock = FakeSocket(evaluate=lambda expr, ctx: value(ctx is None))
        conn, _, _ = make_connection(sock)
        await conn.connect()
        query = StateQuery(conn)
        self.assertTrue(await query.ask("x"))
        self.assertEqual(await query.ask_each("x"), [True])
        self.assertNotIn("contextId", sock.sent[-1]["params"])
        await conn.disconnect()


if __name__ == "__main__":
    unittest.main()
