import pytest
from pydantic import ValidationError

from echoledger.forms import BusinessForm, PersonalForm, first_error, is_email, password_problems

GOOD = {"firstname": "Ada", "lastname": "Lovelace", "password": "Str0ng#pass", "confirm_password": "Str0ng#pass"}


class TestPassword:
    def test_strong_password_passes(self):
        assert password_problems("Str0ng#pass") == []

    @pytest.mark.parametrize("pw, problem", [
        ("Sh0#t", "at least 8 characters"),
        ("lower0#case", "uppercase"),
        ("UPPER0#CASE", "lowercase"),
        ("NoDigits#x", "digit"),
        ("NoSpecial0x", "special character"),
    ])
    def test_each_rule_reported(self, pw, problem):
        assert any(problem in p for p in password_problems(pw))


class TestForms:
    def test_personal_payload_drops_empty_optionals(self):
        form = PersonalForm.model_validate(GOOD)
        assert form.payload() == GOOD

    def test_mismatched_confirmation(self):
        with pytest.raises(ValidationError) as exc:
            PersonalForm.model_validate({**GOOD, "confirm_password": "Other#pass1"})
        assert first_error(exc.value) == "Passwords don't match"

    def test_weak_password_message(self):
        with pytest.raises(ValidationError) as exc:
            PersonalForm.model_validate({**GOOD, "password": "weakpass", "confirm_password": "weakpass"})
        assert "uppercase" in first_error(exc.value)

    def test_business_nests_details(self):
        form = BusinessForm.model_validate({**GOOD, "business_name": "Acme", "business_type": "LLC", "ai_name": "Echo"})
        payload = form.payload()
        assert payload["business"] == {"business_name": "Acme", "business_type": "LLC", "employee_count": 0}
        assert payload["ai_name"] == "Echo"
        assert "business_name" not in payload

    def test_business_name_required(self):
        with pytest.raises(ValidationError):
            BusinessForm.model_validate({**GOOD, "business_type": "LLC"})

    def test_negative_employee_count(self):
        with pytest.raises(ValidationError):
            BusinessForm.model_validate({**GOOD, "business_name": "Acme", "business_type": "LLC", "employee_count": -1})


def test_email_shape():
    assert is_email("a@b.com")
    assert not is_email("a@b")
    assert not is_email("a b@c.com")
