"""
Memory Context Utilities

Helpers for combining, filtering, and rendering a user's facts before
they are injected into a chat prompt. Pure functions over MemoryContext;
no I/O.
"""

from typing import Dict, Iterable, List, Optional

from .models import Fact, MemoryContext

NO_INFORMATION = "No stored information about the user."
NO_CONTEXT = "No previous context available."


def _humanize(predicate: str) -> str:
    return predicate.replace("_", " ")


def merge_memory_contexts(existing: MemoryContext, new_facts: Iterable[Fact]) -> MemoryContext:
    """
    Merge new facts into an existing context.

    Facts are deduplicated on their (subject, predicate, object) triple;
    the first occurrence wins, so existing facts keep their ids and order.

    Args:
        existing: Context to merge into (not modified)
        new_facts: Facts to add

    Returns:
        New MemoryContext for the same user
    """
    seen = set()
    merged: List[Fact] = []
    for fact in [*existing.facts, *new_facts]:
        key = fact.triple()
        if key in seen:
            continue
        seen.add(key)
        merged.append(fact)

    return MemoryContext(user_id=existing.user_id, facts=merged, total_count=len(merged))


def filter_relevant_facts(context: MemoryContext, query: str) -> MemoryContext:
    """Keep facts whose subject, predicate or object contains ``query``
    (case-insensitive)."""
    needle = query.lower()
    relevant = [
        fact
        for fact in context.facts
        if any(needle in part.lower() for part in fact.triple())
    ]
    return MemoryContext(user_id=context.user_id, facts=relevant, total_count=len(relevant))


def summarize_memory_context(context: MemoryContext) -> str:
    """
    One-line summary grouping objects by predicate.

    Example:
        "User information: likes: tea, jazz; lives in: Berlin"
    """
    if not context.facts:
        return NO_INFORMATION

    by_predicate: Dict[str, List[str]] = {}
    for fact in context.facts:
        by_predicate.setdefault(fact.predicate, []).append(fact.object)

    summary = "; ".join(
        f"{_humanize(predicate)}: {', '.join(objects)}"
        for predicate, objects in by_predicate.items()
    )
    return f"User information: {summary}"


def format_memory_context(context: MemoryContext, max_items: int = 20) -> str:
    """
    Format facts as a bullet list for display or prompt injection.

    Args:
        context: Facts to render
        max_items: Maximum facts to include

    Returns:
        Formatted string, one fact per line
    """
    if not context.facts:
        return NO_CONTEXT

    lines = [
        f"• {fact.subject} {_humanize(fact.predicate)}: {fact.object}"
        for fact in context.facts[:max_items]
    ]
    remaining = len(context.facts) - max_items
    if remaining > 0:
        lines.append(f"(+{remaining} more)")
    return "\n".join(lines)


def inject_memory_into_prompt(
    prompt: str, context: MemoryContext, max_items: Optional[int] = None
) -> str:
    """Append a "Context about the user" section to ``prompt``.

    Every fact is included unless ``max_items`` caps the section. The
    prompt is returned unchanged when there are no facts.
    """
    if not context.facts:
        return prompt

    section = "\n".join(
        f"{fact.subject} {_humanize(fact.predicate)}: {fact.object}"
        for fact in context.facts[:max_items]
    )
    return f"{prompt}\n\nContext about the user:\n{section}"
