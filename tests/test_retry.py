import pytest
from unittest.mock import MagicMock

from errors import AuthError, TransportError
from retry import RetryConfig, call_with_retry


def test_returns_first_success():
    func = MagicMock(return_value="ok")
    sleep = MagicMock()
    assert call_with_retry(func, 1, key="v", sleep=sleep) == "ok"
    func.assert_called_once_with(1, key="v")
    sleep.assert_not_called()


def test_retries_transport_errors_with_backoff():
    func = MagicMock(side_effect=[TransportError("down"), TransportError("down"), "ok"])
    sleep = MagicMock()
    config = RetryConfig(max_retries=3, base_delay=0.5, max_delay=5.0)

    assert call_with_retry(func, config=config, sleep=sleep) == "ok"
    assert func.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]


def test_gives_up_after_max_retries():
    func = MagicMock(side_effect=TransportError("down"))
    sleep = MagicMock()
    with pytest.raises(TransportError):
        call_with_retry(func, config=RetryConfig(max_retries=2), sleep=sleep)
    assert func.call_count == 3
    assert sleep.call_count == 2


def test_non_retryable_errors_propagate_immediately():
    func = MagicMock(side_effect=AuthError("bad key"))
    sleep = MagicMock()
    with pytest.raises(AuthError):
        call_with_retry(func, sleep=sleep)
    func.assert_called_once()
    sleep.assert_not_called()


def test_delay_is_capped():
    config = RetryConfig(base_delay=1.0, max_delay=3.0)
    assert [config.delay_for(n) for n in range(4)] == [1.0, 2.0, 3.0, 3.0]


def test_from_config():
    config = RetryConfig.from_config({"retry": {"max_retries": 5, "base_delay": 0.1}})
    assert config.max_retries == 5
    assert config.base_delay == 0.1
    assert config.max_delay == 5.0
    assert RetryConfig.from_config({}) == RetryConfig()


def test_zero_retries_calls_once():
    func = MagicMock(side_effect=TransportError("down"))
    sleep = MagicMock()
    with pytest.raises(TransportError):
        call_with_retry(func, config=RetryConfig(max_retries=0), sleep=sleep)
    func.assert_called_once()
    sleep.assert_not_called()
