from marketplace.payments.poller import PollState, StatusPoller


def _scripted(*outcomes):
    """check() qui renvoie les résultats dans l'ordre (une exception est levée telle quelle)."""
    calls = []
    queue = list(outcomes)

    def check(reference):
        calls.append(reference)
        outcome = queue.pop(0) if queue else "pending"
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return check, calls


def test_stops_as_soon_as_completed():
    check, calls = _scripted("pending", "pending", "completed")
    sleeps = []
    result = StatusPoller(check, max_attempts=10, interval=5, sleep=sleeps.append).run("REF-1")

    assert result.state is PollState.COMPLETED
    assert result.attempt == 3
    assert calls == ["REF-1"] * 3
    assert sleeps == [5, 5]


def test_failed_is_terminal():
    check, _ = _scripted("pending", "failed")
    result = StatusPoller(check, max_attempts=10, interval=0, sleep=lambda s: None).run("REF-1")
    assert result.state is PollState.FAILED
    assert result.message == "Payment failed, please retry"


def test_gives_up_after_budget():
    check, calls = _scripted()
    sleeps = []
    result = StatusPoller(check, max_attempts=3, interval=5, sleep=sleeps.append).run("REF-1")

    assert result.state is PollState.STILL_PROCESSING
    assert len(calls) == 3
    assert len(sleeps) == 2
    assert result.message == "We couldn't verify your payment yet, please check back later"


def test_check_error_stops_with_error_state():
    check, calls = _scripted("pending", RuntimeError("provider exploded"))
    result = StatusPoller(check, max_attempts=10, interval=0, sleep=lambda s: None).run("REF-1")

    assert result.state is PollState.ERROR
    assert len(calls) == 2


def test_poll_once_beyond_budget_does_not_call_provider():
    check, calls = _scripted("completed")
    result = StatusPoller(check, max_attempts=2, interval=5).poll_once("REF-1", attempt=3)

    assert result.state is PollState.STILL_PROCESSING
    assert calls == []


def test_to_dict_announces_next_poll_only_when_not_terminal():
    check, _ = _scripted("pending", "completed")
    poller = StatusPoller(check, max_attempts=5, interval=5)

    waiting = poller.poll_once("REF-1", 1).to_dict(interval=poller.interval)
    assert waiting["state"] == "processing"
    assert waiting["terminal"] is False
    assert waiting["next_poll_in"] == 5

    done = poller.poll_once("REF-1", 2).to_dict(interval=poller.interval)
    assert done["state"] == "completed"
    assert done["terminal"] is True
    assert "next_poll_in" not in done


def test_defaults_come_from_config(monkeypatch):
    monkeypatch.setattr("marketplace.config.POLL_MAX_ATTEMPTS", 4)
    monkeypatch.setattr("marketplace.config.POLL_INTERVAL_SECONDS", 2.5)
    poller = StatusPoller(lambda ref: "pending")
    assert poller.max_attempts == 4
    assert poller.interval == 2.5
