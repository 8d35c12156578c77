import unittest
from unittest import mock
import requests
from common.error_handling import ExternalProcessorError
from common.retry import RetryConfig, calculate_delay, retry_call
from payment_service.gateway import GatewayUnavailable, PaymentGateway

def _response(status_code, body=None):
    response = mock.Mock(status_code=status_code, text=str(body))
    response.json.return_value = body
    return response

class TestRetryCall(unittest.TestCase):
    def setUp(self):
        self.delays = []
        self.config = RetryConfig(max_attempts=3, base_delay=1.0, jitter=False,
                                  retryable_exceptions=[ConnectionError])

    def test_retries_until_success(self):
        func = mock.Mock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "ok"])
        self.assertEqual(retry_call(func, self.config, "a", key="b", sleep=self.delays.append), "ok")
        self.assertEqual(func.call_count, 3)
        func.assert_called_with("a", key="b")
        self.assertEqual(self.delays, [1.0, 2.0])

    def test_gives_up_after_max_attempts(self):
        func = mock.Mock(side_effect=ConnectionError("reset"))
        with self.assertRaises(ConnectionError):
            retry_call(func, self.config, sleep=self.delays.append)
        self.assertEqual(func.call_count, 3)

    def test_other_errors_are_not_retried(self):
        func = mock.Mock(side_effect=ValueError("bad input"))
        with self.assertRaises(ValueError):
            retry_call(func, self.config, sleep=self.delays.append)
        self.assertEqual(func.call_count, 1)
        self.assertEqual(self.delays, [])

    def test_delay_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        self.assertEqual(calculate_delay(10, config), 5.0)
        jittered = calculate_delay(2, RetryConfig(base_delay=1.0, jitter=True))
        self.assertTrue(1.0 <= jittered <= 2.0)

    def test_at_least_one_attempt(self):
        with self.assertRaises(ValueError):
            RetryConfig(max_attempts=0)

class TestPaymentGateway(unittest.TestCase):
    def setUp(self):
        self.session = mock.Mock()
        self.delays = []
        self.gateway = PaymentGateway(
            "https://processor.test/", "sk_test", timeout=5.0, session=self.session, sleep=self.delays.append,
            retry_config=RetryConfig(max_attempts=3, base_delay=0.5, jitter=False,
                                     retryable_exceptions=[GatewayUnavailable]),
        )

    def authorize(self):
        return self.gateway.open_authorization(10000, "USD", {"bookingId": "b1"}, idempotency_key="booking-b1-0")

    def test_successful_authorization(self):
        self.session.post.return_value = _response(200, {"id": "pi_123", "client_secret": "pi_123_secret"})
        authorization = self.authorize()

        self.assertEqual(authorization.reference_id, "pi_123")
        self.assertEqual(authorization.client_token, "pi_123_secret")
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://processor.test/v1/authorizations")
        self.assertEqual(kwargs["json"]["currency"], "usd")
        self.assertEqual(kwargs["headers"]["Idempotency-Key"], "booking-b1-0")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk_test")
        self.assertEqual(kwargs["timeout"], 5.0)

    def test_transient_failures_are_retried_with_same_key(self):
        self.session.post.side_effect = [
            requests.Timeout("read timed out"),
            _response(503, {"error": "busy"}),
            _response(200, {"id": "pi_123", "client_secret": "s"}),
        ]
        self.assertEqual(self.authorize().reference_id, "pi_123")
        keys = {c.kwargs["headers"]["Idempotency-Key"] for c in self.session.post.call_args_list}
        self.assertEqual(keys, {"booking-b1-0"})
        self.assertEqual(self.delays, [0.5, 1.0])

    def test_exhausted_retries_surface_as_unavailable(self):
        self.session.post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(ExternalProcessorError) as ctx:
            self.authorize()
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertEqual(self.session.post.call_count, 3)

    def test_rejection_is_not_retried(self):
        self.session.post.return_value = _response(402, {"error": "card_declined"})
        with self.assertRaises(ExternalProcessorError) as ctx:
            self.authorize()
        self.assertTrue(ctx.exception.rejected)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(self.session.post.call_count, 1)

    def test_unreadable_response(self):
        self.session.post.return_value = _response(200, {"unexpected": True})
        with self.assertRaises(ExternalProcessorError):
            self.authorize()

    def test_refund_request(self):
        self.session.post.return_value = _response(200, {"id": "re_1", "status": "pending"})
        refund = self.gateway.create_refund("pi_123", {"paymentId": "p1"}, idempotency_key="refund-p1")

        self.assertEqual(refund.refund_id, "re_1")
        self.assertEqual(refund.status, "pending")
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://processor.test/v1/refunds")
        self.assertEqual(kwargs["json"], {"payment_intent": "pi_123", "metadata": {"paymentId": "p1"}})
        self.assertEqual(kwargs["headers"]["Idempotency-Key"], "refund-p1")

    def test_refund_rejection_is_not_retried(self):
        self.session.post.return_value = _response(400, {"error": "charge_already_refunded"})
        with self.assertRaises(ExternalProcessorError) as ctx:
            self.gateway.create_refund("pi_123", {}, idempotency_key="refund-p1")
        self.assertTrue(ctx.exception.rejected)
        self.assertEqual(self.session.post.call_count, 1)

if __name__ == "__main__":
    unittest.main()
