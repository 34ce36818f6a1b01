"""
Quiz grading.

Scores a submitted answer set against a step's question set. Pure: no
database access, no side effects. The one-attempt rule and the status
transitions that follow a grade live in the workflow engine.

    score  = round(correct / total_questions * 100)   # ties to even, so 5/8 scores 62
    passed = score >= required_score

Questions without an answer count as wrong; answers to questions outside the
set are ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Protocol

DEFAULT_PASSING_SCORE = 70


class GradableQuestion(Protocol):
    id: int

    @property
    def correct_value(self) -> str | None: ...


@dataclass(frozen=True)
class GradedAnswer:
    question_id: int
    selected_answer: str
    is_correct: bool


@dataclass
class QuizGrade:
    score: int
    passed: bool
    required_score: int
    correct_count: int
    total_questions: int
    answers: list[GradedAnswer] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "passed": self.passed,
            "required_score": self.required_score,
            "correct_count": self.correct_count,
            "total_questions": self.total_questions,
        }


def required_score(step_score: int | None, template_score: int | None) -> int:
    """Step's own passing score, else the step template's, else 70."""
    if step_score is not None:
        return step_score
    if template_score is not None:
        return template_score
    return DEFAULT_PASSING_SCORE


def percentage(correct: int, total: int) -> int:
    if total <= 0:
        return 0
    return round(correct / total * 100)


def grade(
    questions: Iterable[GradableQuestion],
    answers: Mapping[int, str],
    passing_score: int = DEFAULT_PASSING_SCORE,
) -> QuizGrade:
    """Grade ``answers`` (question id → selected option value)."""
    by_id = {q.id: q for q in questions}
    graded: list[GradedAnswer] = []
    for question_id, selected in answers.items():
        question = by_id.get(question_id)
        if question is None:
            continue
        correct_value = question.correct_value
        is_correct = correct_value is not None and correct_value == selected
        graded.append(GradedAnswer(question_id=question_id, selected_answer=selected, is_correct=is_correct))

    correct_count = sum(1 for a in graded if a.is_correct)
    score = percentage(correct_count, len(by_id))
    return QuizGrade(
        score=score,
        passed=score >= passing_score,
        required_score=passing_score,
        correct_count=correct_count,
        total_questions=len(by_id),
        answers=graded,
    )
