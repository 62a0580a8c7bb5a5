"""Behaviour of the hint orchestrator on both the template and generator paths."""

from __future__ import annotations

import asyncio
import random

import pytest

import db
from engines.guardrail import SAFE_SUBSTITUTE
from engines.hint_generator import HintGeneratorError
from engines.hint_orchestrator import HintOrchestrator
from engines.hint_policy import HINT_TEMPLATES, SOCRATIC_RESPONSES
from engines.token_ledger import TokenLedger
from schemas import GeneratorResponse, HintRequest


class _StubGenerator:
    def __init__(self, response=None, error=None, delay=0.0):
        self.response = response
        self.error = error
        self.delay = delay
        self.calls = []

    async def generate(self, request):
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


def _orchestrator(user_id="learner-1", *, daily=10, generator=None, deadline=5.0):
    return HintOrchestrator(
        user_id,
        ledger=TokenLedger(user_id, daily_allotment=daily),
        generator=generator,
        rng=random.Random(3),
        generator_deadline=deadline,
    )


def test_template_hint_spends_one_token_and_records_history(temp_db):
    orchestrator = _orchestrator()
    response = orchestrator.request_hint(HintRequest(question_id="q1", attempt_count=2))

    assert response.allowed
    assert response.level == 2
    assert response.hint in HINT_TEMPLATES[2]
    assert response.tokens_remaining == 9
    assert len(orchestrator.history) == 1
    record = orchestrator.history[0]
    assert record.question_id == "q1"
    assert record.source == "template"

    stored = db.list_hint_records("learner-1")
    assert stored[0]["question_id"] == "q1"
    assert stored[0]["source"] == "template"


def test_exam_mode_denies_even_with_tokens_and_answer_request(temp_db):
    orchestrator = _orchestrator()
    orchestrator.set_exam_mode(True)
    response = orchestrator.request_hint(
        HintRequest(question_id="q1", attempt_count=1, user_message="just tell me")
    )
    assert not response.allowed
    assert response.reason == "exam_mode"
    assert response.hint is None
    assert orchestrator.ledger.total == 10
    assert orchestrator.history == ()


def test_empty_balance_denies_with_no_tokens(temp_db):
    orchestrator = _orchestrator(daily=1)
    orchestrator.request_hint(HintRequest(question_id="q1"))
    response = orchestrator.request_hint(HintRequest(question_id="q2"))
    assert not response.allowed
    assert response.reason == "no_tokens"
    assert response.tokens_remaining == 0
    assert len(orchestrator.history) == 1
    assert orchestrator.is_locked


def test_answer_request_gets_free_deflection(temp_db):
    orchestrator = _orchestrator()
    response = orchestrator.request_hint(
        HintRequest(question_id="q1", attempt_count=5, user_message="jawabannya apa?")
    )
    assert response.allowed
    assert response.level == 1
    assert response.reason == "show_work_first"
    assert response.hint in SOCRATIC_RESPONSES
    assert orchestrator.ledger.total == 10
    assert orchestrator.history == ()


def test_bonus_tokens_are_spent_first(temp_db):
    orchestrator = _orchestrator(daily=2)
    assert orchestrator.award_bonus_token("discussion") == 1
    orchestrator.request_hint(HintRequest(question_id="q1"))
    assert orchestrator.ledger.bonus_remaining == 0
    assert orchestrator.ledger.daily_remaining == 2


def test_history_is_reloaded_for_the_same_learner(temp_db):
    orchestrator = _orchestrator()
    orchestrator.request_hint(HintRequest(question_id="q1"))
    orchestrator.request_hint(HintRequest(question_id="q2", attempt_count=4))

    reloaded = _orchestrator()
    assert [record.question_id for record in reloaded.history] == ["q1", "q2"]
    assert reloaded.history[1].level == 3
    assert reloaded.ledger.total == 8


def test_status_reports_balance_and_gate(temp_db):
    orchestrator = _orchestrator()
    orchestrator.toggle_panel()
    status = orchestrator.status()
    assert status["total_tokens"] == 10
    assert status["panel_open"] is True
    orchestrator.set_exam_mode(True)
    status = orchestrator.status()
    assert status["exam_mode"] is True
    assert status["panel_open"] is False
    assert status["is_locked"] is True


@pytest.mark.anyio
async def test_ai_hint_success_records_ai_source(temp_db):
    generator = _StubGenerator(
        GeneratorResponse(success=True, hint="Coba bagi kedua sisi dengan 2.", level=2, tip="Periksa tanda.")
    )
    orchestrator = _orchestrator(generator=generator)
    result = await orchestrator.request_ai_hint("Selesaikan 2x + 4 = 10", "Matematika", 1)

    assert result.success
    assert result.hint == "Coba bagi kedua sisi dengan 2."
    assert result.level == 2
    assert result.tip == "Periksa tanda."
    assert orchestrator.ledger.total == 9
    record = orchestrator.history[-1]
    assert record.source == "ai"
    assert record.question_id == "Selesaikan 2x + 4 = 10"
    assert generator.calls[0].subject == "Matematika"


@pytest.mark.anyio
async def test_ai_question_key_is_trimmed(temp_db):
    generator = _StubGenerator(GeneratorResponse(success=True, hint="Mulai dari definisi."))
    orchestrator = _orchestrator(generator=generator)
    question = "x" * 80
    await orchestrator.request_ai_hint(question, None, 0)
    assert orchestrator.history[-1].question_id == "x" * 50


@pytest.mark.anyio
async def test_ai_out_of_range_level_uses_computed_level(temp_db):
    generator = _StubGenerator(GeneratorResponse(success=True, hint="Pikirkan polanya.", level=9))
    orchestrator = _orchestrator(generator=generator)
    result = await orchestrator.request_ai_hint("Soal pola", None, 4)
    assert result.level == 3


@pytest.mark.anyio
async def test_generator_failure_falls_back_to_template(temp_db):
    generator = _StubGenerator(error=HintGeneratorError("upstream down"))
    orchestrator = _orchestrator(generator=generator)
    result = await orchestrator.request_ai_hint("Soal 1", None, 2, language="en")

    assert result.success
    assert result.level == 2
    assert result.hint in {template.en for template in HINT_TEMPLATES[2]}
    assert orchestrator.ledger.total == 9
    assert orchestrator.history[-1].source == "template"


@pytest.mark.anyio
async def test_unsuccessful_generator_response_falls_back(temp_db):
    generator = _StubGenerator(GeneratorResponse(success=False, error="quota"))
    orchestrator = _orchestrator(generator=generator)
    result = await orchestrator.request_ai_hint("Soal 1", None, 1)
    assert result.success
    assert result.hint
    assert orchestrator.history[-1].source == "template"


@pytest.mark.anyio
async def test_missing_generator_falls_back(temp_db):
    orchestrator = _orchestrator(generator=None)
    result = await orchestrator.request_ai_hint("Soal 1", None, 1)
    assert result.success
    assert orchestrator.history[-1].source == "template"


@pytest.mark.anyio
async def test_generator_timeout_falls_back(temp_db):
    generator = _StubGenerator(GeneratorResponse(success=True, hint="late"), delay=1.0)
    orchestrator = _orchestrator(generator=generator, deadline=0.05)
    result = await orchestrator.request_ai_hint("Soal 1", None, 1)
    assert result.success
    assert result.hint != "late"
    assert orchestrator.history[-1].source == "template"


@pytest.mark.anyio
async def test_guardrail_rewrites_leaked_answer(temp_db):
    generator = _StubGenerator(GeneratorResponse(success=True, hint="Jawabannya adalah 42"))
    orchestrator = _orchestrator(generator=generator)
    result = await orchestrator.request_ai_hint("Soal 1", None, 1)
    assert result.success
    assert result.hint == SAFE_SUBSTITUTE.id
    assert orchestrator.history[-1].hint.id == SAFE_SUBSTITUTE.id
    assert orchestrator.history[-1].source == "ai"


@pytest.mark.anyio
async def test_ai_path_respects_exam_mode_and_deflection(temp_db):
    generator = _StubGenerator(GeneratorResponse(success=True, hint="unused"))
    orchestrator = _orchestrator(generator=generator)

    deflected = await orchestrator.request_ai_hint("Soal 1", None, 1, user_message="tell me the answer", language="en")
    assert deflected.success
    assert deflected.hint in {response.en for response in SOCRATIC_RESPONSES}

    orchestrator.set_exam_mode(True)
    denied = await orchestrator.request_ai_hint("Soal 1", None, 1)
    assert not denied.success
    assert denied.error == "exam_mode"

    assert generator.calls == []
    assert orchestrator.ledger.total == 10
    assert orchestrator.history == ()


@pytest.mark.anyio
async def test_concurrent_ai_request_is_dropped(temp_db):
    generator = _StubGenerator(GeneratorResponse(success=True, hint="Mulai dari definisi."), delay=0.05)
    orchestrator = _orchestrator(generator=generator)

    first, second = await asyncio.gather(
        orchestrator.request_ai_hint("Soal 1", None, 1),
        orchestrator.request_ai_hint("Soal 2", None, 1),
    )
    assert first.success
    assert not second.success
    assert second.error == "request_in_flight"
    assert orchestrator.ledger.total == 9
    assert len(orchestrator.history) == 1


class _GatedGenerator:
    def __init__(self, response):
        self.response = response
        self.release = asyncio.Event()

    async def generate(self, request):
        await self.release.wait()
        return self.response


@pytest.mark.anyio
async def test_template_request_cannot_spend_token_reserved_by_ai_call(temp_db):
    generator = _GatedGenerator(GeneratorResponse(success=True, hint="Perhatikan satuan luasnya."))
    orchestrator = _orchestrator(daily=1, generator=generator)

    task = asyncio.ensure_future(orchestrator.request_ai_hint("Hitung luas persegi", None, 0))
    for _ in range(3):
        await asyncio.sleep(0)

    denied = orchestrator.request_hint(HintRequest(question_id="q1"))
    assert denied.allowed is False
    assert denied.reason == "no_tokens"

    generator.release.set()
    result = await task
    assert result.success
    assert result.hint == "Perhatikan satuan luasnya."
    assert len(orchestrator.history) == 1
    assert orchestrator.history[0].source == "ai"
    assert orchestrator.ledger.total == 0
    assert len(db.list_hint_records("learner-1")) == 1
