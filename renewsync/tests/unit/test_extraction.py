from __future__ import annotations

import hashlib

import pytest

from renewsync.core.errors import CredentialsNotFoundError, ExtractionFailedError
from renewsync.services.extraction import ExtractionMethod, RawCapture, extract_credentials
from renewsync.services.telemetry import counters_snapshot
from renewsync.tests.utils.factories import SCENARIO_CAPTURE


def test_structured_block_yields_all_fields() -> None:
    # Labeled block with inline values is parsed by the structured strategy.
    result = extract_credentials(RawCapture(text=SCENARIO_CAPTURE))

    assert result.username == "1234567890"
    assert result.password == "AB12CD34"
    assert result.expires_at == "10/10/2025 10:00:00"
    assert result.method == ExtractionMethod.STRUCTURED
    assert counters_snapshot()["extraction_tier_hits.structured"] == 1


def test_values_on_following_lines_use_line_heuristic() -> None:
    # Labels and values split across blocks fall through to the line scan.
    text = (
        "Teste gerado com sucesso!\n\n"
        "Usuário\n5551234567\n\n"
        "Senha\nQWERTY12\n\n"
        "Vencimento: 12/10/2025 08:30"
    )

    result = extract_credentials(RawCapture(text=text))

    assert result.username == "5551234567"
    assert result.password == "QWERTY12"
    assert result.expires_at == "12/10/2025 08:30"
    assert result.method == ExtractionMethod.LINE_HEURISTIC


def test_inline_sentence_falls_back_to_regex() -> None:
    text = "Teste criado! Usuário: 1234567890 Senha: AB12CD34 Vencimento: 10/10/2025"

    result = extract_credentials(RawCapture(text=text))

    assert result.method == ExtractionMethod.REGEX
    assert (result.username, result.password) == ("1234567890", "AB12CD34")
    assert result.expires_at == "10/10/2025"


def test_unlabeled_digit_run_is_taken_as_username() -> None:
    text = "Seu acesso 987654321 foi criado, senha ZX98 ativa"

    result = extract_credentials(RawCapture(text=text))

    assert result.method == ExtractionMethod.REGEX
    assert result.username == "987654321"
    assert result.password == "ZX98"
    assert result.expires_at is None


def test_prose_starting_with_label_word_is_not_a_value() -> None:
    # "Login realizado..." must not be read as a username line.
    text = "Login realizado com sucesso\nUsuário: 1234567890\nSenha: AB12CD34"

    result = extract_credentials(RawCapture(text=text))

    assert result.username == "1234567890"
    assert result.method == ExtractionMethod.STRUCTURED


def test_label_like_values_are_rejected() -> None:
    # Empty labels must not capture the next label as their value.
    with pytest.raises(CredentialsNotFoundError) as exc_info:
        extract_credentials(RawCapture(text="Usuário:\nSenha:\n"))

    assert exc_info.value.attempted == ("structured", "line_heuristic", "regex")


def test_failure_names_every_strategy_tried() -> None:
    with pytest.raises(ExtractionFailedError) as exc_info:
        extract_credentials(RawCapture(text="Erro ao gerar teste. Tente novamente."))

    assert exc_info.value.code == "CREDENTIALS_NOT_FOUND"
    assert "structured" in str(exc_info.value)
    assert counters_snapshot()["extraction_failures_total"] == 1


def test_digest_covers_raw_text_and_expiry_falls_back_to_any_date() -> None:
    text = "Usuário: 42424242\nSenha: pw-1\nAtivo até 05/11/2025 23:59"

    result = extract_credentials(RawCapture(text=text))

    assert result.raw_text_digest == hashlib.sha256(text.encode("utf-8")).hexdigest()
    assert result.expires_at == "05/11/2025 23:59"
    assert "Usuário" not in result.as_dict().values()


def test_label_without_separator_skips_prose_words() -> None:
    # "gerado" follows the label but is a sentence word; the bare digit run is the username.
    result = extract_credentials(RawCapture(text="Usuário gerado 987654321 senha ZX98"))

    assert result.method == ExtractionMethod.REGEX
    assert (result.username, result.password) == ("987654321", "ZX98")


def test_structured_reads_values_on_the_line_after_each_label() -> None:
    text = "USUÁRIO:\n1234567890\nSENHA:\nAB12CD34\nVENCIMENTO:\n10/10/2025 10:00:00"

    result = extract_credentials(RawCapture(text=text))

    assert result.method == ExtractionMethod.STRUCTURED
    assert (result.username, result.password) == ("1234567890", "AB12CD34")
    assert result.expires_at == "10/10/2025 10:00:00"
