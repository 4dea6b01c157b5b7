"""
Tests for barrier classifier (camprush/engine/barriers.py)
"""
import pytest

from camprush.common.models import AssistanceType, AutomationResult, BarrierType, ExecutionSignal
from camprush.engine.barriers import (
    assistance_type_for,
    barrier_for_assistance,
    classify,
    classify_result,
    matched_barriers,
)


class TestClassify:
    def test_clean_page_is_none(self):
        signal = ExecutionSignal(url="https://camp.example.com/done", http_status=200, page_text="Thanks!")
        assert classify(signal) == BarrierType.NONE

    @pytest.mark.parametrize("marker", ["recaptcha", "hCaptcha", "turnstile", "cloudflare-challenge"])
    def test_captcha_markers(self, marker):
        assert classify(ExecutionSignal(markers=[marker])) == BarrierType.CAPTCHA

    def test_login_by_status(self):
        assert classify(ExecutionSignal(http_status=401)) == BarrierType.LOGIN_REQUIRED

    def test_payment_by_url(self):
        signal = ExecutionSignal(url="https://camp.example.com/checkout/payment")
        assert classify(signal) == BarrierType.PAYMENT_REQUIRED

    def test_queue_by_text(self):
        signal = ExecutionSignal(page_text="You are now in line. Estimated wait time: 4 minutes")
        assert classify(signal) == BarrierType.QUEUE

    def test_server_error_is_unknown(self):
        assert classify(ExecutionSignal(http_status=503)) == BarrierType.UNKNOWN_ERROR

    def test_not_found_is_not_an_error_barrier(self):
        assert classify(ExecutionSignal(http_status=404)) == BarrierType.NONE

    def test_precedence_captcha_over_everything(self):
        signal = ExecutionSignal(
            markers=["waiting_room", "payment_form", "login_form", "recaptcha"],
            http_status=500,
        )
        assert matched_barriers(signal) == {
            BarrierType.CAPTCHA,
            BarrierType.LOGIN_REQUIRED,
            BarrierType.PAYMENT_REQUIRED,
            BarrierType.QUEUE,
            BarrierType.UNKNOWN_ERROR,
        }
        assert classify(signal) == BarrierType.CAPTCHA

    def test_precedence_login_over_payment(self):
        signal = ExecutionSignal(markers=["payment_form"], http_status=401)
        assert classify(signal) == BarrierType.LOGIN_REQUIRED

    def test_deterministic(self):
        signal = ExecutionSignal(markers=["queue_it", "error"], page_text="Something went wrong")
        assert len({classify(signal) for _ in range(20)}) == 1

    def test_classify_result(self):
        result = AutomationResult(http_status=200, detected_markers=["recaptcha"])
        assert classify_result(result) == BarrierType.CAPTCHA


class TestAssistanceMapping:
    def test_assistance_type_for(self):
        assert assistance_type_for(BarrierType.CAPTCHA) == AssistanceType.CAPTCHA
        assert assistance_type_for(BarrierType.LOGIN_REQUIRED) == AssistanceType.ACCOUNT_CREATION
        assert assistance_type_for(BarrierType.PAYMENT_REQUIRED) == AssistanceType.PAYMENT
        assert assistance_type_for(BarrierType.UNKNOWN_ERROR) == AssistanceType.FORM_COMPLETION

    def test_barrier_for_assistance(self):
        assert barrier_for_assistance(AssistanceType.CAPTCHA) == BarrierType.CAPTCHA
        assert barrier_for_assistance(AssistanceType.FORM_COMPLETION) == BarrierType.UNKNOWN_ERROR
