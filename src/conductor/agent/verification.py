"""Response verification: rule checks plus an optional semantic judge.

Tier one is a set of cheap rules that never call a model. Every rule runs and
reports an issue with a severity; only ``error`` issues fail verification,
``warning`` issues are passed along as feedback. Tier two asks a second,
cheaper model for a PASS/FAIL verdict, and only runs when the rules passed
and the request is marked high-stakes.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from dataclasses import dataclass, field

from conductor.agent.citations import Citation, has_citations
from conductor.cancel import CancelToken
from conductor.llm.message import Message
from conductor.llm.provider import ChatProvider
from conductor.llm.streaming import generate
from conductor.tracing import Tracer

logger = logging.getLogger(__name__)

MAX_VERIFICATION_ATTEMPTS = 3


def degraded_response(attempts: int = MAX_VERIFICATION_ATTEMPTS) -> str:
    """User-safe text sent when every verification attempt failed."""
    noun = "attempt" if attempts == 1 else "attempts"
    return (
        f"I wasn't able to provide a verified response after {attempts} {noun}.\n\n"
        "What you can try instead:\n"
        "- Rephrase your question\n"
        "- Provide more specific context\n"
        "- Ask me to look up specific sources"
    )


DEGRADED_RESPONSE = degraded_response()

_STOP_WORDS = frozenset(
    """
    a an the is are was were be been being have has had do does did will
    would could should may might must can to of in for on with at by from
    as into through during before after above below between under again
    further then once here there when where why how all each few more most
    other some such no nor not only own same so than too very just also now
    and but or if what which who whom this that these those am it its i me
    my you your he she they them we us our hi hello please thanks thank
    """.split()
)

JUDGE_SYSTEM = """\
You review an assistant's draft answer before it is sent. Decide whether the \
draft answers the user's request accurately, relying only on the material \
provided. Reply with PASS on the first line if it does. Otherwise reply with \
FAIL on the first line followed by one short paragraph naming the problem.
"""


class Severity(enum.Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ForbiddenPattern:
    """A regex the response must not match."""

    code: str
    pattern: str
    message: str
    flags: int = 0

    def search(self, text: str) -> bool:
        return re.search(self.pattern, text, self.flags) is not None


# Markdown constructs a plain-text chat surface cannot render.
MARKDOWN_PATTERNS: tuple[ForbiddenPattern, ...] = (
    ForbiddenPattern("MARKDOWN_BOLD", r"\*\*[^*]+\*\*", "Do not use markdown bold (**text**)"),
    ForbiddenPattern(
        "MARKDOWN_LINK", r"\[[^\]]+\]\([^)]+\)", "Do not use markdown links ([text](url))"
    ),
    ForbiddenPattern(
        "BLOCKQUOTE", r"^>\s?", "Do not use blockquotes (>), use bullet points instead", re.M
    ),
)


@dataclass
class VerificationRules:
    min_length: int = 50
    max_length: int | None = None
    forbidden_patterns: list[ForbiddenPattern] = field(default_factory=list)
    require_citations: bool = False


@dataclass(frozen=True)
class VerificationIssue:
    code: str
    message: str
    severity: Severity = Severity.ERROR


@dataclass
class VerificationRequest:
    """What the response is checked against."""

    user_message: str
    citations: list[Citation] = field(default_factory=list)
    high_stakes: bool = False


@dataclass
class VerificationOutcome:
    passed: bool
    feedback: str
    attempt: int
    issues: list[VerificationIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[VerificationIssue]:
        return [i for i in self.issues if i.severity is Severity.ERROR]


def extract_keywords(text: str) -> list[str]:
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    return [w for w in words if len(w) > 2 and w not in _STOP_WORDS]


def format_feedback(issues: list[VerificationIssue]) -> str:
    if not issues:
        return "OK"
    return "\n".join(f"[{i.code}] {i.message}" for i in issues)


class Verifier:
    """Checks a candidate response before it is delivered."""

    def __init__(
        self,
        rules: VerificationRules | None = None,
        judge: ChatProvider | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self.rules = rules or VerificationRules()
        self._judge = judge
        self._tracer = tracer or Tracer()

    def check_rules(
        self, response: str, request: VerificationRequest
    ) -> list[VerificationIssue]:
        """Run every rule; never calls a model."""
        rules = self.rules
        issues: list[VerificationIssue] = []
        stripped = response.strip()

        if not stripped:
            issues.append(VerificationIssue("EMPTY_RESPONSE", "Response cannot be empty"))
            return issues

        min_length = min(len(request.user_message), rules.min_length)
        if len(stripped) < min_length:
            issues.append(
                VerificationIssue(
                    "MINIMUM_LENGTH",
                    "Response is too short for the question asked",
                    Severity.WARNING,
                )
            )
        if rules.max_length is not None and len(stripped) > rules.max_length:
            issues.append(
                VerificationIssue(
                    "MAXIMUM_LENGTH",
                    f"Response is {len(stripped)} characters; keep it under {rules.max_length}",
                )
            )

        for pattern in rules.forbidden_patterns:
            if pattern.search(response):
                issues.append(VerificationIssue(pattern.code, pattern.message))

        keywords = extract_keywords(request.user_message)
        lowered = response.lower()
        if keywords and not any(k in lowered for k in keywords):
            issues.append(
                VerificationIssue(
                    "ADDRESSES_QUESTION",
                    "Response does not appear to address the question asked",
                    Severity.WARNING,
                )
            )

        if request.citations and not has_citations(response):
            issues.append(
                VerificationIssue(
                    "CITES_SOURCES",
                    "Sources were gathered but are not cited; use [n] markers "
                    "or a Sources: footer",
                    Severity.ERROR if rules.require_citations else Severity.WARNING,
                )
            )

        return issues

    async def verify(
        self,
        response: str,
        request: VerificationRequest,
        attempt: int = 1,
        cancel: CancelToken | None = None,
    ) -> VerificationOutcome:
        """Check ``response``; the judge call is bounded by ``cancel``."""
        span = self._tracer.start("verify", attempt=attempt, high_stakes=request.high_stakes)
        issues = self.check_rules(response, request)
        passed = not any(i.severity is Severity.ERROR for i in issues)

        if passed and request.high_stakes and self._judge is not None:
            judgment = await self._judge_response(response, request, cancel)
            if judgment is not None:
                issues.append(judgment)
                passed = False

        outcome = VerificationOutcome(
            passed=passed, feedback=format_feedback(issues), attempt=attempt, issues=issues
        )
        logger.info(
            "Verification attempt %d %s (%d issue(s))",
            attempt,
            "passed" if passed else "failed",
            len(issues),
        )
        span.end(passed=passed, issues=[i.code for i in issues])
        return outcome

    async def _judge_response(
        self,
        response: str,
        request: VerificationRequest,
        cancel: CancelToken | None = None,
    ) -> VerificationIssue | None:
        if cancel is not None and cancel.cancelled:
            logger.warning("Turn deadline passed before the semantic judge, skipping")
            return None

        sources = "\n".join(
            f"[{c.id}] {c.title}: {c.excerpt}" for c in request.citations
        )
        prompt = (
            f"User request:\n{request.user_message}\n\n"
            f"Sources:\n{sources or '(none)'}\n\n"
            f"Draft answer:\n{response}"
        )
        try:
            result = await asyncio.wait_for(
                generate(
                    provider=self._judge,  # type: ignore[arg-type]
                    system=JUDGE_SYSTEM,
                    messages=[Message.user(prompt)],
                ),
                timeout=cancel.remaining() if cancel is not None else None,
            )
        except asyncio.TimeoutError:
            logger.warning("Semantic judge hit the turn deadline, skipping")
            return None
        except Exception as e:
            # The judge is advisory; an outage must not block delivery.
            logger.warning("Semantic judge failed, skipping: %s", e)
            return None

        verdict = result.message.text.strip()
        first_line, _, rest = verdict.partition("\n")
        if first_line.strip().upper().startswith("PASS"):
            return None
        reason = rest.strip() or first_line.strip() or "No reason given"
        return VerificationIssue("SEMANTIC_CHECK", reason)


def build_retry_prompt(
    previous_response: str,
    feedback: str,
    attempt: int,
    max_attempts: int = MAX_VERIFICATION_ATTEMPTS,
) -> str:
    """Feedback injected into the conversation after a failed verification."""
    excerpt = previous_response[:500]
    if len(previous_response) > 500:
        excerpt += "..."
    return (
        f"[Verification Failed - Attempt {attempt}/{max_attempts}]\n\n"
        f"Your previous response failed verification with these issues:\n{feedback}\n\n"
        "Please revise your response to address these issues. Answer the user's "
        "question directly and cite sources if context was provided.\n\n"
        f"Previous response that failed:\n---\n{excerpt}\n---\n\n"
        "Please provide a corrected response:"
    )
