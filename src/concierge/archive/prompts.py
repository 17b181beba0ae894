"""Prompt templates for archive summarization and retrieval."""

from __future__ import annotations

from jinja2 import Template

SUMMARY_SYSTEM_TEMPLATE = Template(
    """\
You are summarizing a specific segment of an ongoing conversation.
{% if sections %}

=== CONTEXT (for understanding only, DO NOT include in summary) ===
{{ sections | join("\n\n") }}
=== END CONTEXT ===

{% endif %}
YOUR TASK:
Summarize ONLY the conversation segment below (make it a detailed ~1000 token summary, \
approximately 750 words).
Use any context provided above to understand relationships, references, names, and meaning,
but the summary should ONLY cover the messages in the segment being archived.

Include:
1. Key topics discussed in this segment
2. Important decisions or information shared
3. Any relevant action items or follow-ups mentioned

OUTPUT STRICT JSON:
{ "summary": "...", "key_topics": ["topic1", "topic2", ...] }""",
    keep_trailing_newline=False,
)

SUMMARY_USER_TEMPLATE = Template(
    """\
CONVERSATION SEGMENT TO SUMMARIZE
Period: {{ period_start }} to {{ period_end }}

{{ conversation }}"""
)

EXCERPT_SYSTEM_PROMPT = """\
Extract the most relevant parts of the conversation that answer the query.
Cite verbatim the relevant exchanges.

OUTPUT STRICT JSON: { "excerpts": ["...", "..."] }"""

EXCERPT_USER_TEMPLATE = Template(
    """\
QUERY: {{ query }}

CONVERSATION:
{{ conversation }}"""
)

IDENTIFY_SYSTEM_PROMPT = """\
You are analyzing conversation history summaries to find which chunks might contain \
relevant information.

OUTPUT STRICT JSON ONLY:
{ "relevant_chunks": [{"chunkId": "chunk id", "relevance": "brief reason"}] }

If no chunks are relevant, return: { "relevant_chunks": [] }"""

IDENTIFY_USER_TEMPLATE = Template(
    """\
QUERY: {{ query }}

AVAILABLE CHUNKS:
{% for chunk in chunks %}
Chunk {{ chunk.id }}:
- Date: {{ chunk.start }} to {{ chunk.end }}
- Summary: {{ chunk.summary }}

{% endfor %}
Which chunks might contain information relevant to the query?""",
    trim_blocks=True,
)
