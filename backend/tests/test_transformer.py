"""
表情変換オーケストレータのテスト
"""

import json
import logging

import pytest

from app.core.errors import AppError, ErrorKind
from app.core.services.quota import InMemoryQuotaStore, QuotaTracker
from app.core.services.transformer import (
    TransformOrchestrator,
    TransformState,
    normalize_error,
)

BODY = json.dumps(
    {"image": "data:image/png;base64,iVBORw0KGgo=", "emoji": "😀"}
).encode()
HEADERS = {"CF-Connecting-IP": "198.51.100.23"}


class StubProvider:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.attempts = 0

    async def transform_image(self, image_data, emoji, mime_type="image/jpeg"):
        self.attempts = 2
        if self.error is not None:
            raise self.error
        return "b3V0"


def _orchestrator(provider: StubProvider) -> TransformOrchestrator:
    tracker = QuotaTracker(InMemoryQuotaStore(), max_per_day=5)
    return TransformOrchestrator(tracker, lambda: provider, model_version="test-model")


@pytest.mark.asyncio
async def test_success_logs_summary_without_client_data(caplog):
    orchestrator = _orchestrator(StubProvider())
    with caplog.at_level(logging.INFO, logger="app.core.services.transformer"):
        response = await orchestrator.handle(BODY, HEADERS)

    assert response.transformed_image == "b3V0"
    assert response.metadata.model_version == "test-model"
    assert orchestrator.quota.current_count("198.51.100.23") == 1

    summary = json.loads(caplog.records[-1].getMessage())
    assert summary["request_id"] == response.metadata.request_id
    assert summary["state"] == TransformState.RESPONDED.value
    assert summary["status"] == 200
    assert summary["attempts"] == 2
    assert "198.51.100.23" not in caplog.text
    assert "😀" not in caplog.text


@pytest.mark.asyncio
async def test_failure_records_stage(caplog):
    orchestrator = _orchestrator(
        StubProvider(AppError(ErrorKind.GEMINI_TIMEOUT, "slow"))
    )
    with caplog.at_level(logging.INFO, logger="app.core.services.transformer"):
        with pytest.raises(AppError) as exc_info:
            await orchestrator.handle(BODY, HEADERS)

    assert exc_info.value.kind is ErrorKind.GEMINI_TIMEOUT
    record = caplog.records[-1]
    line, detail = record.getMessage().split(" detail=", 1)
    summary = json.loads(line)
    assert record.levelno == logging.WARNING
    assert detail == "slow"
    assert summary["state"] == TransformState.ERRORED.value
    assert summary["failed_at"] == TransformState.QUOTA_CHECKED.value
    assert summary["code"] == "gemini_timeout"
    assert orchestrator.quota.current_count("198.51.100.23") == 0


class TestNormalizeError:
    def test_app_error_passthrough(self):
        err = AppError(ErrorKind.GEMINI_API_ERROR, "down")
        assert normalize_error(err) is err

    def test_content_filter_signal(self):
        err = AppError(
            ErrorKind.INTERNAL_ERROR, "Content was FLAGGED AS INAPPROPRIATE upstream"
        )
        assert normalize_error(err).kind is ErrorKind.GEMINI_CONTENT_FILTERED

    def test_unexpected_exception(self):
        err = normalize_error(ValueError("boom"))
        assert err.kind is ErrorKind.INTERNAL_ERROR
        assert "boom" in err.message
