"""
Тесты для генератора кодов проверки
"""
from datetime import datetime

import pytest

from certrepo.generator import VerificationCodeGenerator
from certrepo.exceptions import GenerationError


class TestVerificationCodeGenerator:
    """Тесты для класса VerificationCodeGenerator"""

    @pytest.fixture
    def generator(self):
        """Фикстура для генератора"""
        return VerificationCodeGenerator()

    def test_code_format(self, generator):
        """Тест формата кода проверки"""
        code = generator.generate_verification_code()

        assert len(code) == 8
        assert code.isupper() or code.isdigit()
        assert generator.validate_code_format(code)

    def test_code_avoids_existing(self, generator):
        """Код не совпадает с уже выданными"""
        existing = set()
        for _ in range(200):
            existing.add(generator.generate_verification_code(existing))
        assert len(existing) == 200

    def test_code_space_exhausted(self):
        """Тест ошибки при исчерпании попыток"""
        generator = VerificationCodeGenerator(code_length=1)
        generator.max_attempts = 10
        all_codes = set(generator.characters)

        with pytest.raises(GenerationError):
            generator.generate_verification_code(all_codes)

    def test_validate_code_format(self, generator):
        """Тест проверки формата кода"""
        assert generator.validate_code_format("K7M2Q9XA")
        assert not generator.validate_code_format("k7m2q9xa")
        assert not generator.validate_code_format("K7M2Q9X")
        assert not generator.validate_code_format("K7M2-9XA")
        assert not generator.validate_code_format("")

    def test_verification_id(self, generator):
        verification_id = generator.generate_verification_id()
        assert len(verification_id) == 16
        int(verification_id, 16)
        assert verification_id == verification_id.upper()

    def test_share_token(self, generator):
        token = generator.generate_share_token()
        assert len(token) == 32
        assert token.isalnum()
        assert token != generator.generate_share_token()

    def test_qr_data(self, generator):
        data = generator.generate_qr_data("https://verify.example/verify/", "cert-1", "ABC")
        assert data == "https://verify.example/verify/cert-1?v=ABC"

    def test_hash_is_deterministic(self, generator):
        moment = datetime(2024, 6, 1, 12, 0, 0)
        first = generator.generate_hash("cert-1", "ABC", "Diploma", moment)

        assert first == generator.generate_hash("cert-1", "ABC", "Diploma", moment)
        assert first != generator.generate_hash("cert-1", "ABC", "Diploma 2", moment)
        assert len(first) == 64
