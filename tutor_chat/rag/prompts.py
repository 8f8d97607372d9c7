"""
Prompt assembly for the tutor chat RAG pipeline.

Builds the system instruction and the context block from retrieved chunks.
There is no token-level truncation here: keeping the assembled prompt inside
the model's context window is the caller's responsibility.
"""
from typing import List, Optional, Sequence

from tutor_chat.models import AssembledPrompt, RetrievedChunk, Turn


SYSTEM_PROMPT = """You are an AI teaching assistant helping students learn from video courses.

Your role:
- Help students understand course content through conversation
- Answer questions using information from video transcripts
- Provide clear explanations and examples
- Guide students to the right video sections for more detail

Key behaviors:
- Always cite video sources with timestamps when referencing content
- Break down complex concepts into simple terms
- If you don't know something, say so - don't make up information

Citation format:
- Use this format: [Video Title @ MM:SS]
- Example: "As explained in [Introduction to Trading @ 3:45]..."
- Always include the timestamp so students can jump to that section"""

NO_CONTEXT_INSTRUCTION = (
    "No relevant video content found for this query. "
    "I can only help with questions about the available course videos."
)

CHUNK_SEPARATOR = "\n\n---\n\n"

FALLBACK_MESSAGES = {
    "no_context": (
        "I don't have access to video content that directly answers your question. Could you:\n"
        "- Rephrase your question more specifically?\n"
        "- Let me know which video you're referring to?\n"
        "- Ask about a topic that was covered in the course videos?\n\n"
        "I can only help with questions about the course content that's been uploaded."
    ),
    "technical_error": (
        "I encountered a technical issue processing your request. Please try again, "
        "and if the problem persists, let your instructor know."
    ),
    "rate_limited": (
        "You've reached the message limit for now. Try again in a few minutes, "
        "or review the video content while you wait."
    ),
    "empty_query": "I'm here to help! What would you like to know about the course content?",
}


def format_timestamp(seconds: float) -> str:
    """Format an offset as M:SS, or H:MM:SS past the hour."""
    total = int(max(seconds, 0))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def rank_chunks(chunks: Sequence[RetrievedChunk]) -> List[RetrievedChunk]:
    """Order by similarity descending. sorted() is stable, so ties keep retrieval order."""
    return sorted(chunks, key=lambda c: -c.similarity)


def build_context_block(chunks: Sequence[RetrievedChunk]) -> str:
    if not chunks:
        return NO_CONTEXT_INSTRUCTION

    parts = []
    for idx, chunk in enumerate(chunks, 1):
        title = chunk.source_title or "Unknown Video"
        timestamp = format_timestamp(chunk.start_offset_seconds)
        parts.append(f"Source {idx}: {title} @ {timestamp}\nContent: {chunk.text.strip()}")

    return (
        "Here are relevant sections from the course videos:\n\n"
        f"{CHUNK_SEPARATOR.join(parts)}\n\n"
        "Use this information to answer the student's question. Always cite sources with timestamps."
    )


def assemble(query: str, chunks: Sequence[RetrievedChunk], max_chunks: int = 5) -> AssembledPrompt:
    """
    Build the prompt for one request.

    Takes the top max_chunks chunks by similarity. With no chunks the context
    block is the fixed no-context instruction and has_context is False, so the
    caller can answer with FALLBACK_MESSAGES["no_context"] without a provider call.
    """
    if max_chunks <= 0:
        raise ValueError(f"max_chunks must be positive, got {max_chunks}")

    selected = rank_chunks(chunks)[:max_chunks]
    context_block = build_context_block(selected)
    user_turn = (
        f"{context_block}\n\n"
        f"Student's Question: {query.strip()}\n\n"
        "Please provide a helpful, accurate answer based on the video content above. "
        "Remember to cite sources with timestamps."
    )

    return AssembledPrompt(
        system_instruction=SYSTEM_PROMPT,
        context_block=context_block,
        user_turn=user_turn,
        chunks=tuple(selected),
    )


def build_messages(prompt: AssembledPrompt, conversation_history: Optional[Sequence[Turn]] = None) -> List[dict]:
    """Provider message list: system, prior turns, then the assembled user turn."""
    messages = [{"role": "system", "content": prompt.system_instruction}]

    if conversation_history:
        for turn in conversation_history:
            messages.append(turn.to_message())

    messages.append({"role": "user", "content": prompt.user_turn})
    return messages
