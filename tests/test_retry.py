from errors import DispatchError, ExecutionTimeoutError, FatalActionError
from models.workflow import RetryPolicy
from utils.retry import MAX_BACKOFF_SECONDS, RetryManager


def test_known_categories_pass_through():
    timeout = ExecutionTimeoutError("x")
    fatal = FatalActionError("Connection timeout")
    assert RetryManager.classify(timeout) is timeout
    assert RetryManager.classify(fatal) is fatal


def test_unexpected_handler_errors_are_retried():
    error = RetryManager.classify(OSError("Network is unreachable"))
    assert isinstance(error, DispatchError)
    assert str(error) == "OSError: Network is unreachable"
    assert isinstance(RetryManager.classify(KeyError("template")), DispatchError)


def test_exhausted_after_max_retries_plus_one():
    policy = RetryPolicy(max_retries=2)
    assert not RetryManager.exhausted(policy, 2)
    assert RetryManager.exhausted(policy, 3)
    assert RetryManager.exhausted(RetryPolicy(max_retries=0), 1)


def test_fixed_backoff():
    policy = RetryPolicy(retry_delay_seconds=45)
    assert [RetryManager.backoff_seconds(policy, n) for n in (1, 2, 3)] == [45, 45, 45]


def test_exponential_backoff_is_capped_but_never_below_base():
    policy = RetryPolicy(retry_delay_seconds=600, backoff="exponential")
    assert RetryManager.backoff_seconds(policy, 1) == 600
    assert RetryManager.backoff_seconds(policy, 2) == 1200
    assert RetryManager.backoff_seconds(policy, 10) == MAX_BACKOFF_SECONDS

    slow = RetryPolicy(retry_delay_seconds=3600, backoff="exponential")
    assert RetryManager.backoff_seconds(slow, 3) == 3600


def test_jitter_only_lengthens():
    policy = RetryPolicy(retry_delay_seconds=100)
    for _ in range(20):
        assert 100 <= RetryManager.backoff_seconds(policy, 1, jitter=True) <= 110
