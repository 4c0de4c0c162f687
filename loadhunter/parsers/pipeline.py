from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from loadhunter.parsers.detect import detect_email_source, sender_address
from loadhunter.parsers.fullcircle import parse_fullcircle_email
from loadhunter.parsers.hints import apply_parser_hints
from loadhunter.parsers.sylectus import parse_subject_line, parse_sylectus_body
from loadhunter.schemas.loads import EmailSource, ParsedLoad, ParserHint


@dataclass(slots=True)
class ParseOutcome:
    source: EmailSource
    load: ParsedLoad
    # field name -> "subject" | "body" | "hint"
    field_sources: dict[str, str] = field(default_factory=dict)


def _record(sources: dict[str, str], names: Sequence[str], layer: str) -> None:
    for name in names:
        sources.setdefault(name, layer)


def parse_email(
    *,
    sender: str | None,
    subject: str | None,
    body_text: str | None,
    body_html: str | None,
    hints: Sequence[ParserHint] = (),
) -> ParseOutcome:
    """Detect the posting format and merge every extraction layer into one load.

    Layers run in precedence order and each only fills fields that earlier
    layers left absent: the Sylectus subject line, then the body, then the
    tenant hints for the detected source.
    """
    source = detect_email_source(sender_address(sender), subject, body_text, body_html)
    sources: dict[str, str] = {}

    if source == "fullcircle":
        load = parse_fullcircle_email(subject, body_text, body_html)
        _record(sources, load.populated_fields(), "body")
    else:
        load = parse_subject_line(subject)
        _record(sources, load.populated_fields(), "subject")
        body = parse_sylectus_body(subject, body_text)
        _record(sources, load.merge_missing(body), "body")

    applicable = [hint for hint in hints if hint.email_source == source]
    _record(sources, apply_parser_hints(load, applicable, body_text, body_html), "hint")
    return ParseOutcome(source=source, load=load, field_sources=sources)
