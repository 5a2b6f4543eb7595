from datetime import timedelta

import pytest

from config import Settings
from database import utcnow
from errors import OTPDeliveryError
from otp import OTPService


@pytest.fixture
def service(db, otp_sender):
    return OTPService(db, otp_sender, Settings())


def test_test_phone_skips_provider(service, db, otp_sender):
    assert service.request_code("9999999999") == {"test_mode": True}
    assert otp_sender.sent == []
    assert db["otp"].count_documents({}) == 0


def test_test_phone_accepts_test_code(service):
    assert service.verify_code("9999999999", "1234") == {"success": True, "test_mode": True}
    assert service.verify_code("9999999999", "0000")["success"] is False


def test_bypass_off_in_production(db, otp_sender):
    config = Settings()
    config.APP_ENV = "production"
    service = OTPService(db, otp_sender, config)
    assert service.request_code("9999999999") == {"test_mode": False}
    assert len(otp_sender.sent) == 1
    assert service.verify_code("9999999999", "1234")["success"] is False


def test_bypass_flag_can_be_disabled(db, otp_sender):
    config = Settings()
    config.OTP_TEST_BYPASS = False
    assert not OTPService(db, otp_sender, config).is_test_phone("9999999999")


def test_request_stores_and_sends_six_digits(service, db, otp_sender):
    service.request_code("9123456789")
    service.request_code("9123456789")
    assert db["otp"].count_documents({"phone": "9123456789"}) == 1
    phone, code = otp_sender.sent[-1]
    assert phone == "9123456789"
    assert len(code) == 6 and code.isdigit()
    assert db["otp"].find_one({"phone": phone})["code"] == code


def test_verify_success_deletes_record(service, db, otp_sender):
    service.request_code("9123456789")
    code = otp_sender.sent[-1][1]
    assert service.verify_code("9123456789", code) == {"success": True}
    assert db["otp"].count_documents({}) == 0


def test_wrong_code_counts_attempts(service, db, otp_sender):
    service.request_code("9123456789")
    code = otp_sender.sent[-1][1]
    wrong = "000000" if code != "000000" else "111111"
    for _ in range(5):
        assert service.verify_code("9123456789", wrong)["success"] is False
    result = service.verify_code("9123456789", code)
    assert result["success"] is False
    assert "Too many attempts" in result["reason"]


def test_non_ascii_code_is_a_mismatch(service, db):
    service.request_code("9123456789")
    assert service.verify_code("9123456789", "\u00e91234")["success"] is False
    assert db["otp"].find_one({"phone": "9123456789"})["attempts"] == 1


def test_expired_code(service, db, otp_sender):
    service.request_code("9123456789")
    code = otp_sender.sent[-1][1]
    db["otp"].update_one({"phone": "9123456789"}, {"$set": {"expires_at": utcnow() - timedelta(seconds=1)}})
    assert service.verify_code("9123456789", code) == {"success": False, "reason": "OTP expired"}


def test_provider_failure_is_operational(db):
    class BrokenSender:
        def send(self, phone, code):
            raise OTPDeliveryError("Failed to send OTP. Please try again.")

    with pytest.raises(OTPDeliveryError) as info:
        OTPService(db, BrokenSender(), Settings()).request_code("9123456789")
    assert info.value.is_operational
    assert info.value.status_code == 502
