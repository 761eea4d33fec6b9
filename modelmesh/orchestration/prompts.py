"""Prompt templates used by the orchestration strategies."""

from __future__ import annotations

from collections.abc import Sequence

_SEPARATOR = "\n\n---\n\n"


def refine_prompt(previous_output: str, original_prompt: str) -> str:
    return (
        f"Previous analysis:\n{previous_output}\n\n"
        f"Please refine or expand on this:\n{original_prompt}"
    )


def synthesis_prompt(original_prompt: str, responses: Sequence[tuple[str, str]]) -> str:
    body = _SEPARATOR.join(f"{model_id}:\n{text}" for model_id, text in responses)
    return (
        f"Original question: {original_prompt}\n\n"
        f"Synthesize these responses into a comprehensive answer:\n\n{body}"
    )


def debate_prompt(original_prompt: str, previous: Sequence[tuple[str, str]], round_number: int) -> str:
    points = "\n\n".join(f"{model_id}: {text}" for model_id, text in previous)
    return (
        f"Topic: {original_prompt}\n\n"
        f"Round {round_number}. Previous arguments:\n{points}\n\n"
        "Critique the arguments above and refine your own position in 3-4 sentences, "
        "addressing the key points raised:"
    )


def debate_conclusion_prompt(
    original_prompt: str, final_round: Sequence[tuple[str, str]], rounds: int
) -> str:
    body = _SEPARATOR.join(f"{model_id}:\n{text}" for model_id, text in final_round)
    return (
        f"Original topic: {original_prompt}\n\n"
        f"Final positions after a debate with {rounds} round(s):\n\n{body}\n\n"
        "Provide a concise conclusion that acknowledges the different perspectives "
        "and identifies the key insight."
    )


def vote_prompt(original_prompt: str, answers: Sequence[str]) -> str:
    numbered = "\n\n".join(f"Answer {i}:\n{text}" for i, text in enumerate(answers, start=1))
    return (
        f"Question: {original_prompt}\n\n"
        f"Candidate answers:\n\n{numbered}\n\n"
        "Which answer is best? Reply with a single line of the form 'VOTE: <number>'."
    )


def decomposition_prompt(problem: str, max_subtasks: int) -> str:
    return (
        f"Break down this problem into at most {max_subtasks} sub-problems that can be "
        "solved independently. List them as a numbered list (1., 2., ...). "
        "If the problem is simple enough to answer directly, reply with the single "
        f"word ATOMIC.\n\n{problem}"
    )


def combination_prompt(problem: str, parts: Sequence[tuple[str, str]]) -> str:
    body = "\n\n".join(
        f"Sub-problem {i}: {sub}\nSolution: {answer}"
        for i, (sub, answer) in enumerate(parts, start=1)
    )
    return (
        f"Problem: {problem}\n\n"
        f"Combine these sub-solutions into a comprehensive answer:\n\n{body}"
    )


def mixture_prompt(original_prompt: str, scored: Sequence[tuple[str, float, str]]) -> str:
    body = _SEPARATOR.join(
        f"[Score: {score:.0f}] {model_id}:\n{text}" for model_id, score, text in scored
    )
    return (
        f"Original question: {original_prompt}\n\n"
        f"Combine these high-quality responses into a single comprehensive answer:\n\n{body}"
    )
