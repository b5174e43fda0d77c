from __future__ import annotations

from pathlib import Path
from typing import Optional

BUILTIN_PROMPTS: tuple[str, ...] = (
    "generate a c program with total length of 2000 words",
    "explain quantum science in 20000 words",
    "write a 10000 word essay comparing cats and dogs",
    "Generate a 10000 word essay on the topic of 'The importance of being earnest'",
    "give me a summary of the book 'The Great Gatsby' in 5000 words",
    "analyze the advantages and disadvantages of the internet in 10000 words",
    "Do a brief analysis of current state of Artificial Intelligence in 10000 words",
    "How can I be rich? Give me a answer in 10000 words",
    "What is the meaning of life? Explain in 10000 words",
    "Write a convolutional neural network in pytorch, the code should be at least 10000 words long",
    "Give me a full red-black tree implementation in C++, at least 10000 words long",
    "Write a 15,000 word research paper on the history of rock music from the 1950s to the present day.",
    "Provide a detailed 20,000 word overview explaining the key events and figures of the French Revolution.",
    "Describe the main themes and plot points of Homer's Odyssey in a 10,000 word essay.",
    "Compose a 12,000 word biography profiling the life and achievements of Albert Einstein.",
    "Explain the causes and long-term impacts of World War II in Europe in a 25,000 word essay.",
    "Analyze the key events and turning points of the US Civil War in a 30,000 word essay.",
    "Discuss the major scientific discoveries and theories of Isaac Newton in a 20,000 word essay.",
    "Provide a comprehensive overview of William Shakespeare's plays and poems in a 40,000 word essay.",
    "Write a 50,000 word essay exploring the history, theology and practices of Buddhism.",
    "Explain the plot, characters, themes and literary devices used in Jane Austen's Pride and Prejudice in a 15,000 word essay.",
)


def load_prompts_from_file(prompt_file: Path) -> tuple[str, ...]:
    """One prompt per line; blank lines are skipped."""
    prompts: list[str] = []
    with prompt_file.open("r", encoding="utf-8") as f:
        for line in f:
            value = line.rstrip("\r\n")
            if not value.strip():
                continue
            prompts.append(value)
    if not prompts:
        raise ValueError(f"No usable prompts found in {prompt_file}")
    return tuple(prompts)


def load_prompts(prompt_file: Optional[Path]) -> tuple[str, ...]:
    if prompt_file is None:
        return BUILTIN_PROMPTS
    return load_prompts_from_file(prompt_file)
