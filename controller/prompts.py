"""Exam content: topic pools, examiner instructions and the ready signal."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

PART_1_TOPICS = (
    "Work and Studies",
    "Hometown",
    "Daily Routine",
    "Hobbies",
    "Weather",
    "Travel",
    "Technology",
    "Food",
    "Sports",
    "Music",
    "Neighbors",
)

PART_2_TOPICS = (
    "Describe a memorable journey you have taken.",
    "Describe a book you read recently that you found useful.",
    "Describe a time when you helped someone.",
    "Describe a piece of technology you use often.",
    "Describe a place you visited on vacation that you liked.",
    "Describe a skill you would like to learn in the future.",
)

READY_SIGNAL = "The student is ready. Start the exam now with the Introduction."

SYSTEM_INSTRUCTION_TEMPLATE = """You are a professional IELTS Speaking Examiner named Mr. Gemini.
Conduct a formal IELTS Speaking test.

PHASES:
1. **INTRO**: Introduce yourself, check ID.
2. **PART_1**: Ask 3 questions about "{part1_topic}".
3. **PART_2**: Give topic: "{part2_topic}". Allow 10s thinking time, then ask user to speak.
4. **PART_3**: Ask 2 abstract questions related to "{part2_topic}".
5. **FINISHED**: End test.

CRITICAL RULES:
- Use `{tool_name}` tool before starting each new phase.
- AFTER asking a question, STOP SPEAKING and WAIT for the user to answer.
- Do NOT interrupt the user.
- Do NOT answer the questions yourself.
- Start the conversation ONLY after receiving the "START" signal from the system.
"""


@dataclass(frozen=True)
class ExamTopics:
    part1_topic: str
    part2_topic: str


def pick_topics(
    rng: Optional[random.Random] = None,
    *,
    part1_topic: Optional[str] = None,
    part2_topic: Optional[str] = None,
) -> ExamTopics:
    rng = rng or random.Random()
    return ExamTopics(
        part1_topic=part1_topic or rng.choice(PART_1_TOPICS),
        part2_topic=part2_topic or rng.choice(PART_2_TOPICS),
    )


def build_system_instruction(topics: ExamTopics, *, tool_name: str = "setExamPart") -> str:
    return SYSTEM_INSTRUCTION_TEMPLATE.format(
        part1_topic=topics.part1_topic,
        part2_topic=topics.part2_topic,
        tool_name=tool_name,
    )
