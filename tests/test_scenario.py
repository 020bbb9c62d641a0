import pytest

from emailpipe_harness.linestream import LineStream
from emailpipe_harness.scenario import (
    DualScenarioRunner,
    Probe,
    RoundResult,
    ScenarioRunner,
    Session,
    Submitter,
    drain,
    failed,
)
from emailpipe_harness.submit import SubmissionError
from tests.fakes import STALL, RelaySubmitter, ScriptedSource


class FailingSubmitter(Submitter):
    def submit(self, probe, address):
        raise SubmissionError("handshake failed")

    def submit_many(self, deliveries):
        raise SubmissionError("handshake failed")


@pytest.fixture
def make_session(fake_sleep):
    def _make(address):
        source = ScriptedSource()
        return Session(address, LineStream(source, sleep=fake_sleep)), source

    return _make


def test_probe_generate_whenCalledTwice_thenTokensDiffer():
    first, second = Probe.generate(), Probe.generate()

    assert first.token != second.token
    assert len(first.token) == 32
    int(first.token, 16)
    assert first.sender.endswith("@example.com")
    assert first.token in first.body


def test_submitter_whenSubmitManyMissing_thenCannotInstantiate():
    class SingleOnly(Submitter):
        def submit(self, probe, address):
            pass

    with pytest.raises(TypeError):
        SingleOnly()


def test_round_result_str():
    assert str(RoundResult("#1", True)) == "#1: OK"
    assert str(RoundResult("#2-1", False)) == "#2-1: ERR"


def test_session_from_greeting_whenFreeText_thenLastWordIsAddress(make_stream):
    session = Session.from_greeting(
        "Listening for mail at ab12.cd34@emailpipe.sh\n", make_stream()
    )

    assert session.address == "ab12.cd34@emailpipe.sh"


def test_session_from_greeting_whenBlank_thenRaises(make_stream):
    with pytest.raises(ValueError):
        Session.from_greeting("  \n", make_stream())


class TestDrain:
    def test_drain_whenEndOfStream_thenConcatenatesEverything(self, make_stream):
        stream = make_stream(b"a\nb", STALL, b"\nc", b"")

        assert drain(stream, wait=2) == "a\nb\nc"

    def test_drain_whenQuiet_thenStopsByDefault(self, make_stream):
        stream = make_stream(b"a\n", STALL, b"b\n")

        # STALL is shorter than the wait, so both lines arrive within one quiet period
        assert drain(stream, wait=2) == "a\nb\n"
        assert not stream.exhausted

    def test_drain_whenUntilEof_thenSitsOutQuietPeriods(self, make_stream, fake_sleep):
        stream = make_stream(b"a\n", *([STALL] * 20), b"b\n", b"")

        assert drain(stream, wait=1, until_eof=True) == "a\nb\n"
        assert stream.exhausted

    def test_drain_whenUntilEofNeverCloses_thenGivesUpAtTimeout(self, make_stream):
        ticks = iter(range(100))
        stream = make_stream(b"a\n")

        result = drain(stream, wait=1, until_eof=True, timeout=5, clock=lambda: next(ticks))

        assert result == "a\n"
        assert not stream.exhausted


class TestScenarioRunner:
    def test_run_whenTokenRelayed_thenOk(self, make_session):
        session, source = make_session("ab12.cd34@emailpipe.sh")
        submitter = RelaySubmitter({session.address: source})
        reported = []

        ok = ScenarioRunner(session, submitter, report=reported.append).run(count=1)

        assert ok is True
        assert reported == ["#1: OK"]
        assert submitter.sent[0][1] == session.address

    def test_run_whenSeveralRounds_thenFreshProbeEachRound(self, make_session):
        session, source = make_session("ab12.cd34@emailpipe.sh")
        submitter = RelaySubmitter({session.address: source})
        runner = ScenarioRunner(session, submitter, report=lambda line: None)

        assert runner.run(count=3) is True
        assert [str(r) for r in runner.results] == ["#1: OK", "#2: OK", "#3: OK"]
        tokens = {probe.token for probe, _ in submitter.sent}
        assert len(tokens) == 3

    def test_run_whenTokenMissing_thenErrAndContinues(self, make_session):
        session, source = make_session("ab12.cd34@emailpipe.sh")
        submitter = RelaySubmitter({session.address: source}, drop=True)
        reported = []

        ok = ScenarioRunner(session, submitter, report=reported.append).run(count=2)

        assert ok is False
        assert reported == ["#1: ERR", "#2: ERR"]

    def test_run_whenSubmissionFails_thenPropagates(self, make_session):
        session, _ = make_session("ab12.cd34@emailpipe.sh")
        runner = ScenarioRunner(session, FailingSubmitter(), report=lambda line: None)

        with pytest.raises(SubmissionError):
            runner.run(count=1)

    def test_run_whenCountNotPositive_thenRaises(self, make_session):
        session, source = make_session("ab12.cd34@emailpipe.sh")
        runner = ScenarioRunner(session, RelaySubmitter({}), report=lambda line: None)

        with pytest.raises(ValueError):
            runner.run(count=0)


class TestDualScenarioRunner:
    def test_run_whenIsolated_thenFourOkVerdicts(self, make_session):
        first, first_source = make_session("aaaa.aaaa@emailpipe.sh")
        second, second_source = make_session("bbbb.bbbb@emailpipe.sh")
        submitter = RelaySubmitter(
            {first.address: first_source, second.address: second_source}
        )
        reported = []

        results = DualScenarioRunner(
            first, second, submitter, report=reported.append
        ).run(count=2)

        assert reported == ["#1-1: OK", "#1-2: OK", "#2-1: OK", "#2-2: OK"]
        assert failed(results) == []

    def test_run_whenSubmittedTogether_thenOneBatchPerRound(self, make_session):
        first, first_source = make_session("aaaa.aaaa@emailpipe.sh")
        second, second_source = make_session("bbbb.bbbb@emailpipe.sh")
        submitter = RelaySubmitter(
            {first.address: first_source, second.address: second_source}
        )

        DualScenarioRunner(first, second, submitter, report=lambda line: None).run(1)

        assert len(submitter.batches) == 1
        (probe_a, address_a), (probe_b, address_b) = submitter.batches[0]
        assert (address_a, address_b) == (first.address, second.address)
        assert probe_a.token != probe_b.token

    def test_run_whenTokensLeak_thenBothSessionsErr(self, make_session):
        first, first_source = make_session("aaaa.aaaa@emailpipe.sh")
        second, second_source = make_session("bbbb.bbbb@emailpipe.sh")
        submitter = RelaySubmitter(
            {first.address: first_source, second.address: second_source}, leak=True
        )
        reported = []

        results = DualScenarioRunner(
            first, second, submitter, report=reported.append
        ).run(count=1)

        assert reported == ["#1-1: ERR", "#1-2: ERR"]
        assert len(failed(results)) == 2

    def test_run_whenOnlySecondDelivered_thenFirstErrSecondOk(self, make_session):
        first, first_source = make_session("aaaa.aaaa@emailpipe.sh")
        second, second_source = make_session("bbbb.bbbb@emailpipe.sh")

        class SecondOnly(RelaySubmitter):
            def submit_many(self, deliveries):
                deliveries = list(deliveries)
                super().submit_many(deliveries[1:])

        submitter = SecondOnly({first.address: first_source, second.address: second_source})

        results = DualScenarioRunner(first, second, submitter, report=lambda line: None).run(1)

        assert [r.ok for r in results] == [False, True]
