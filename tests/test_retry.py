import pytest

from reels.errors import EncodeError, EncodeFailure, LockBusy, ValidationError
from reels.retry import RetryPolicy


class TestRetryPolicy:
    def test_retries_until_success(self):
        slept = []
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise LockBusy("held")
            return "ok"

        policy = RetryPolicy.fixed(5, 0.5, retry_on=(LockBusy,), sleep=slept.append)
        assert policy.call(flaky) == "ok"
        assert len(calls) == 3
        assert slept == [0.5, 0.5]

    def test_gives_up_after_max_attempts(self):
        calls = []

        def always_busy():
            calls.append(1)
            raise LockBusy("held")

        policy = RetryPolicy.fixed(4, 0.1, retry_on=(LockBusy,), sleep=lambda _s: None)
        with pytest.raises(LockBusy):
            policy.call(always_busy)
        assert len(calls) == 4

    def test_does_not_retry_unlisted_exceptions(self):
        calls = []

        def bad():
            calls.append(1)
            raise ValidationError("nope")

        policy = RetryPolicy.fixed(3, 0.1, retry_on=(LockBusy,), sleep=lambda _s: None)
        with pytest.raises(ValidationError):
            policy.call(bad)
        assert len(calls) == 1

    def test_give_up_on_wins_over_retry_on(self):
        calls = []

        def bad():
            calls.append(1)
            raise ValidationError("nope")

        policy = RetryPolicy(max_attempts=3, give_up_on=(ValidationError,), sleep=lambda _s: None)
        with pytest.raises(ValidationError):
            policy.call(bad)
        assert len(calls) == 1

    def test_should_retry_vetoes_permanent_encode_failures(self):
        calls = []

        def decode_error():
            calls.append(1)
            raise EncodeError("corrupt", kind=EncodeFailure.DECODE)

        policy = RetryPolicy.fixed(
            3, 0.0, retry_on=(EncodeError,), should_retry=lambda exc: exc.retryable,
        )
        with pytest.raises(EncodeError):
            policy.call(decode_error)
        assert len(calls) == 1

    def test_exponential_delays_are_capped(self):
        policy = RetryPolicy.exponential(5, base=1.0, cap=3.0)
        assert policy.delays == (1.0, 2.0, 3.0, 3.0)
        assert policy.delay_for(1) == 1.0
        assert policy.delay_for(10) == 3.0

    def test_passes_arguments_through(self):
        policy = RetryPolicy(max_attempts=1)
        assert policy.call(lambda a, b=0: a + b, 2, b=3, description="add") == 5


class TestEncodeErrorRetryable:
    @pytest.mark.parametrize("kind", [EncodeFailure.TIMEOUT, EncodeFailure.OOM, EncodeFailure.FD_EXHAUSTION])
    def test_transient_kinds_are_retryable(self, kind):
        assert EncodeError("x", kind=kind).retryable

    @pytest.mark.parametrize(
        "kind",
        [EncodeFailure.DECODE, EncodeFailure.FILTER_CONFLICT, EncodeFailure.CANCELLED, EncodeFailure.PROCESS],
    )
    def test_permanent_kinds_are_not(self, kind):
        assert not EncodeError("x", kind=kind).retryable
