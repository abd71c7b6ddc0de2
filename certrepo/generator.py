"""
Генератор кодов проверки, идентификаторов и ссылок доступа для сертификатов.
"""

import hashlib
import secrets
import string
import uuid
from datetime import datetime
from typing import Set
from .exceptions import GenerationError


class VerificationCodeGenerator:
    """Генератор кодов и идентификаторов сертификатов."""

    def __init__(self, code_length: int = 8, token_length: int = 32):
        # Символы для кода проверки (латинские буквы в верхнем регистре + цифры)
        self.characters = string.ascii_uppercase + string.digits
        self.token_characters = string.ascii_letters + string.digits
        self.code_length = code_length
        self.token_length = token_length
        self.max_attempts = 1000  # Максимальное количество попыток генерации уникального кода

    def generate_verification_code(self, existing_codes: Set[str] = None) -> str:
        """
        Генерирует уникальный код проверки сертификата.

        Формат: 8 символов A-Z0-9, например K7M2Q9XA

        Args:
            existing_codes: Множество существующих кодов для проверки уникальности

        Returns:
            str: Уникальный код проверки

        Raises:
            GenerationError: Если не удалось сгенерировать уникальный код
        """
        if existing_codes is None:
            existing_codes = set()

        for attempt in range(self.max_attempts):
            code = ''.join(secrets.choice(self.characters) for _ in range(self.code_length))
            if code not in existing_codes:
                return code

        raise GenerationError(
            f"Не удалось сгенерировать уникальный код проверки за {self.max_attempts} попыток"
        )

    def generate_verification_id(self) -> str:
        """Генерирует идентификатор проверки: 16 шестнадцатеричных символов в верхнем регистре."""
        return uuid.uuid4().hex[:16].upper()

    def generate_share_token(self) -> str:
        """Генерирует токен ссылки доступа из криптографически стойкого источника."""
        return ''.join(secrets.choice(self.token_characters) for _ in range(self.token_length))

    def generate_qr_data(self, base_url: str, certificate_id: str, verification_id: str) -> str:
        """
        Формирует данные QR-кода сертификата.

        Args:
            base_url: Базовый URL страницы проверки
            certificate_id: ID сертификата
            verification_id: Идентификатор проверки

        Returns:
            str: Ссылка вида {base_url}/{certificate_id}?v={verification_id}
        """
        return f"{base_url.rstrip('/')}/{certificate_id}?v={verification_id}"

    def generate_hash(self, certificate_id: str, verification_id: str, title: str,
                      timestamp: datetime = None) -> str:
        """
        Вычисляет SHA-256 отпечаток сертификата.

        Args:
            certificate_id: ID сертификата
            verification_id: Идентификатор проверки
            title: Название сертификата
            timestamp: Момент создания (по умолчанию сейчас)

        Returns:
            str: Шестнадцатеричный SHA-256
        """
        timestamp = timestamp or datetime.now()
        millis = int(timestamp.timestamp() * 1000)
        payload = f"{certificate_id}{verification_id}{title}{millis}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def validate_code_format(self, code: str) -> bool:
        """
        Проверяет корректность формата кода проверки.

        Args:
            code: Код для проверки

        Returns:
            bool: True если формат корректен, False иначе
        """
        if not code or len(code) != self.code_length:
            return False
        return all(c in self.characters for c in code)


def main():
    """Демонстрация работы генератора."""
    generator = VerificationCodeGenerator()

    print("Примеры кодов проверки:")
    codes: Set[str] = set()
    for _ in range(3):
        code = generator.generate_verification_code(codes)
        codes.add(code)
        print(f"  {code}")

    verification_id = generator.generate_verification_id()
    print(f"\nИдентификатор проверки: {verification_id}")
    print(f"Токен ссылки: {generator.generate_share_token()}")


if __name__ == "__main__":
    main()
