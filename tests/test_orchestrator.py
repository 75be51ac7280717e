"""Tests for the generic request loop."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from tandem.audit import EventType, MemoryAuditSink
from tandem.config import AP2_EXTENSION_URI
from tandem.errors import ChallengeMismatch, UnauthorizedCaller, ValidationError
from tandem.mandate import CartMandate
from tandem.message import PAYMENT_MANDATE_DATA_KEY, MessageBuilder
from tandem.orchestrator import AllowListPolicy, KeywordToolSelector, TaskOrchestrator
from tandem.task import TaskState

from helpers import make_contents, make_payment_draft


AP2 = [AP2_EXTENSION_URI]


def echo(ctx):
    ctx.add_artifact({"echo": ctx.envelope.prompt})
    ctx.complete("done")


def make_orchestrator(operations=None, **kwargs):
    operations = operations or {"echo": echo}
    rules = [(name, (name,)) for name in operations]
    kwargs.setdefault("audit", MemoryAuditSink())
    return TaskOrchestrator(
        name="test agent",
        operations=operations,
        selector=KeywordToolSelector(rules),
        **kwargs,
    )


def message(text="echo", task_id=None, **data):
    builder = MessageBuilder().text(text).task_id(task_id)
    for key, value in data.items():
        builder.data(key, value)
    return builder.build()


class TestKeywordToolSelector:
    def test_exact_name_wins(self):
        selector = KeywordToolSelector([("find_items", ("update",)), ("update_cart", ("update",))])
        assert selector.select("update_cart", ["find_items", "update_cart"]) == "update_cart"

    def test_first_matching_rule(self):
        selector = KeywordToolSelector([("a", ("pay",)), ("b", ("payment",))])
        assert selector.select("Please PAYMENT now", ["a", "b"]) == "a"

    def test_no_match(self):
        assert KeywordToolSelector([("a", ("pay",))]).select("hello", ["a"]) is None


class TestRequestLoop:
    def test_completes_with_artifacts(self):
        orch = make_orchestrator()
        response = orch.handle(message("echo please"), AP2)

        assert response.state is TaskState.COMPLETED
        assert response.task.status_text == "done"
        assert response.task.find_artifact_data("echo") == "echo please"
        assert response.activated_extensions == frozenset(AP2)

    def test_missing_extension_fails_task(self):
        orch = make_orchestrator()
        response = orch.handle(message(), [])

        assert response.state is TaskState.FAILED
        assert "Payment extension not activated" in response.task.status_text
        assert response.activated_extensions == frozenset()
        assert orch.audit.of_type(EventType.CALLER_REJECTED)

    def test_unsupported_extensions_are_not_activated(self):
        orch = make_orchestrator()
        response = orch.handle(message(), AP2 + ["https://example.com/other/v1"])
        assert response.activated_extensions == frozenset(AP2)

    def test_unknown_operation(self):
        orch = make_orchestrator()
        response = orch.handle(message("dance"), AP2)

        assert response.state is TaskState.FAILED
        assert "Unknown operation 'dance'" in response.task.status_text
        assert "Available: echo" in response.task.status_text

    def test_caller_policy_runs_before_handlers(self):
        calls = []
        orch = make_orchestrator(
            {"echo": lambda ctx: calls.append(ctx)},
            caller_policy=AllowListPolicy({"trusted"}),
        )

        missing = orch.handle(message(), AP2)
        assert missing.task.status_text == "An error occurred: Unauthorized Request: Missing shopping_agent_id."

        unknown = orch.handle(message(shopping_agent_id="rogue"), AP2)
        assert unknown.task.status_text == "An error occurred: Unauthorized Request: Unknown agent 'rogue'."
        assert calls == []

        allowed = orch.handle(message(shopping_agent_id="trusted"), AP2)
        assert allowed.state is TaskState.COMPLETED
        assert len(calls) == 1

    def test_unsigned_payment_mandate_rejected(self):
        orch = make_orchestrator()
        draft = make_payment_draft(CartMandate(make_contents()))
        response = orch.handle(message(**{PAYMENT_MANDATE_DATA_KEY: draft}), AP2)

        assert response.state is TaskState.FAILED
        assert "User authorization not found in PaymentMandate." in response.task.status_text

    def test_malformed_mandate_rejected(self):
        orch = make_orchestrator()
        response = orch.handle(message(**{PAYMENT_MANDATE_DATA_KEY: {"nope": 1}}), AP2)

        assert response.state is TaskState.FAILED
        assert "ap2.mandates.PaymentMandate/PaymentMandate.payment_mandate_contents" in response.task.status_text

    def test_handler_error_leaves_no_partial_artifacts(self):
        def half_done(ctx):
            ctx.add_artifact({"partial": True})
            raise ValidationError("cart_id", "Missing cart_id.")

        orch = make_orchestrator({"echo": half_done})
        response = orch.handle(message(), AP2)

        assert response.state is TaskState.FAILED
        assert response.task.status_text == "An error occurred: cart_id: Missing cart_id."
        assert response.task.artifacts == []

    def test_unexpected_error(self):
        def broken(ctx):
            raise KeyError("boom")

        response = make_orchestrator({"echo": broken}).handle(message(), AP2)
        assert response.state is TaskState.FAILED
        assert response.task.status_text.startswith("An unexpected error occurred:")

    def test_outcome_set_twice_is_an_error(self):
        def twice(ctx):
            ctx.complete()
            ctx.complete()

        response = make_orchestrator({"echo": twice}).handle(message(), AP2)
        assert response.state is TaskState.FAILED


class TestFollowUps:
    def test_input_required_then_follow_up(self):
        seen = []

        def ask(ctx):
            seen.append(ctx.is_follow_up)
            if ctx.is_follow_up:
                ctx.complete("thanks")
            else:
                ctx.require_input("What is the code?", {"challenge": {"type": "otp"}})

        orch = make_orchestrator({"echo": ask})
        first = orch.handle(message(), AP2)
        assert first.state is TaskState.INPUT_REQUIRED
        assert first.task.find_artifact_data("challenge") == {"type": "otp"}

        second = orch.handle(message(task_id=first.task.id), AP2)
        assert second.state is TaskState.COMPLETED
        assert seen == [False, True]
        assert len(second.task.history) == 2

    def test_challenge_mismatch_keeps_task_open(self):
        def check(ctx):
            raise ChallengeMismatch("Challenge response incorrect.")

        response = make_orchestrator({"echo": check}).handle(message(), AP2)
        assert response.state is TaskState.INPUT_REQUIRED
        assert response.task.status_text == "Challenge response incorrect."

    def test_terminal_task_ignores_new_messages(self):
        orch = make_orchestrator()
        done = orch.handle(message(), AP2)

        again = orch.handle(message("echo again", task_id=done.task.id), AP2)
        assert again.state is TaskState.COMPLETED
        assert len(again.task.history) == 1
        assert len(again.task.artifacts) == 1

    def test_messages_to_one_task_are_serialized(self):
        active = []
        overlaps = []
        lock = threading.Lock()

        def slow(ctx):
            with lock:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
            count = ctx.task.metadata.get("count", 0)
            time.sleep(0.01)
            ctx.task.metadata["count"] = count + 1
            with lock:
                active.pop()
            ctx.require_input("more")

        orch = make_orchestrator({"echo": slow})
        first = orch.handle(message(), AP2)

        with ThreadPoolExecutor(max_workers=8) as ex:
            list(ex.map(lambda _: orch.handle(message(task_id=first.task.id), AP2), range(16)))

        assert overlaps == []
        assert orch.get_task(first.task.id).metadata["count"] == 17


class TestManagement:
    def test_cancel_and_terminal_hook(self):
        ended = []

        def ask(ctx):
            ctx.require_input("code?")

        orch = make_orchestrator({"echo": ask}, on_terminal=lambda task: ended.append(task.id))
        task = orch.handle(message(), AP2).task

        canceled = orch.cancel(task.id)
        assert canceled.state is TaskState.CANCELED
        assert ended == [task.id]

    def test_failing_audit_sink_does_not_break_requests(self):
        class BrokenSink:
            def log(self, *args, **kwargs):
                raise OSError("disk full")

        response = make_orchestrator(audit=BrokenSink()).handle(message(), AP2)
        assert response.state is TaskState.COMPLETED

    def test_transitions_are_audited(self):
        orch = make_orchestrator()
        task = orch.handle(message(), AP2).task

        transitions = [e.details for e in orch.audit.of_type(EventType.TASK_TRANSITION)]
        assert transitions == [
            {"from": "submitted", "to": "working"},
            {"from": "working", "to": "completed"},
        ]
        received = orch.audit.of_type(EventType.MESSAGE_RECEIVED)
        assert received[0].task_id == task.id
        assert received[0].details["texts"] == ["echo"]

    def test_describe(self):
        orch = make_orchestrator(role="merchant", card_extras={"merchant_public_key": "pem"})
        card = orch.describe()
        assert card["operations"] == ["echo"]
        assert card["extensions"] == [AP2_EXTENSION_URI]
        assert card["merchant_public_key"] == "pem"

    def test_needs_operations(self):
        with pytest.raises(ValueError, match="at least one operation"):
            TaskOrchestrator(name="empty", operations={}, selector=KeywordToolSelector([]))

    def test_allow_list_policy_direct(self):
        policy = AllowListPolicy({"trusted"})
        with pytest.raises(UnauthorizedCaller, match="Missing shopping_agent_id"):
            policy(message())
