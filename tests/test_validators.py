"""
Тесты для модуля валидации
"""
import pytest

from certrepo.validators import DataValidator, EmailValidator, FileValidator, PasswordValidator
from certrepo.exceptions import ValidationError


class TestEmailValidator:
    """Тесты для класса EmailValidator"""

    def test_valid_emails(self):
        """Тест университетских адресов"""
        validator = EmailValidator("@upm.edu.my")
        valid_emails = [
            "student@upm.edu.my",
            "first.last@upm.edu.my",
            "Student.Two@UPM.EDU.MY",
            "a+tag@upm.edu.my",
        ]

        for email in valid_emails:
            assert validator.validate(email), f"Адрес {email} должен быть валидным"

    def test_invalid_emails(self):
        """Тест посторонних и некорректных адресов"""
        validator = EmailValidator("@upm.edu.my")
        invalid_emails = [
            "",
            "student@gmail.com",
            "student@upm.edu.my.evil.com",
            "no-at-sign.upm.edu.my",
            "@upm.edu.my",
        ]

        for email in invalid_emails:
            assert not validator.validate(email), f"Адрес {email} должен быть невалидным"

    def test_admin_email(self):
        validator = EmailValidator("@upm.edu.my")
        assert validator.is_admin_email("registrar@upm.edu.my")
        assert validator.is_admin_email("sysadmin.office@upm.edu.my")
        assert not validator.is_admin_email("john.doe@upm.edu.my")


class TestPasswordValidator:
    """Тесты для класса PasswordValidator"""

    @pytest.mark.parametrize("password, message", [
        ("Short1", "at least 8"),
        ("", "at least 8"),
        ("alllowercase1", "uppercase"),
        ("ALLUPPERCASE1", "uppercase"),
        ("NoDigitsHere", "number"),
    ])
    def test_invalid(self, password, message):
        valid, error = PasswordValidator(8).validate(password)
        assert not valid
        assert message in error

    def test_valid(self):
        assert PasswordValidator(8).validate("Secret123") == (True, "")


class TestFileValidator:
    """Тесты для класса FileValidator"""

    def test_allowed_types(self):
        validator = FileValidator(1024)
        for name in ["a.pdf", "b.DOCX", "c.jpeg", "d.png"]:
            assert validator.validate(name, 100)[0], f"Файл {name} должен быть допустимым"

    def test_rejected(self):
        validator = FileValidator(1024)
        valid, error = validator.validate("script.sh", 10)
        assert not valid
        assert "File type not allowed" in error
        assert not validator.validate("a.pdf", 0)[0]
        assert not validator.validate("a.pdf", 2048)[0]

    def test_mime_type(self):
        assert FileValidator.guess_mime_type("scan.JPG") == "image/jpeg"
        assert FileValidator.guess_mime_type("archive.zip") is None


class TestDataValidator:
    """Тесты для класса DataValidator"""

    def test_registration_collects_errors(self):
        errors = DataValidator().validate_registration("someone@gmail.com", "weak", "")
        assert len(errors) == 3

    def test_certificate(self):
        validator = DataValidator()
        assert validator.validate_certificate("Diploma", "student@upm.edu.my") == []
        assert len(validator.validate_certificate("", "not-an-email")) == 2

    def test_client_request(self):
        validator = DataValidator()
        assert validator.validate_request("Training", "Placement", "Graduation", "Engineering") == []

        errors = validator.validate_request("x" * 101, "", "Graduation", " ")
        assert "Description cannot be empty" in errors
        assert "Organization name cannot be empty" in errors
        assert "Title cannot exceed 100 characters" in errors

    def test_require_reason(self):
        validator = DataValidator()
        assert validator.require_reason("  Duplicate  ", "revoke a certificate") == "Duplicate"
        with pytest.raises(ValidationError, match="A reason is required to revoke a certificate"):
            validator.require_reason(None, "revoke a certificate")
