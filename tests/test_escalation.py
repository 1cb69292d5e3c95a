import logging

import pytest

from vps_harden.escalation import EscalationController
from vps_harden.models import Decision, Outcome


def never_asked(question):
    raise AssertionError(f"unexpected prompt: {question}")


class Recorder:
    def __init__(self, answer):
        self.answer = answer
        self.questions = []

    def __call__(self, question):
        self.questions.append(question)
        return self.answer


def test_ok_continues_without_prompt():
    controller = EscalationController(confirm=never_asked)

    assert controller.resolve(Outcome.ok("done")) is Decision.CONTINUE


def test_fatal_aborts_without_prompt():
    controller = EscalationController(confirm=never_asked)

    decision = controller.resolve(Outcome.fatal("Failed to create user", "check useradd"))

    assert decision is Decision.ABORT


def test_fatal_aborts_even_with_assume_yes():
    controller = EscalationController(confirm=never_asked, assume_yes=True)

    assert controller.resolve(Outcome.fatal("Failed to back up")) is Decision.ABORT


@pytest.mark.parametrize("answer,expected", [(True, Decision.CONTINUE), (False, Decision.ABORT)])
def test_recoverable_follows_operator_answer(answer, expected):
    confirm = Recorder(answer)
    controller = EscalationController(confirm=confirm)

    decision = controller.resolve(Outcome.recoverable("Low disk space"), "Proceed anyway?")

    assert decision is expected
    assert confirm.questions == ["Proceed anyway?"]


def test_assume_yes_skips_prompt():
    controller = EscalationController(confirm=never_asked, assume_yes=True)

    assert controller.resolve(Outcome.recoverable("Reboot pending")) is Decision.CONTINUE


def test_decision_is_logged(caplog):
    controller = EscalationController(confirm=Recorder(False))

    with caplog.at_level(logging.INFO, logger="vps_harden"):
        controller.resolve(Outcome.recoverable("Port 2222 is in use", "pick another port"))

    assert "Recoverable: Port 2222 is in use" in caplog.text
    assert "Hint: pick another port" in caplog.text
    assert "Operator chose to stop" in caplog.text


def test_ok_without_message_is_logged(caplog):
    controller = EscalationController(confirm=never_asked)

    with caplog.at_level(logging.DEBUG, logger="vps_harden"):
        controller.resolve(Outcome.ok())

    assert [record.getMessage() for record in caplog.records] == ["ok"]
