"""Customer email generation for the contract workflow.

Implements a hybrid approach:
1) Deterministic assembly of headers + required facts.
2) Optional LLM phrasing layer (Qwen3 via DeepInfra) for a warmer body.
3) Post-validation so the signing link, totals and attachments are never lost.

Two emails are built here: the signing request sent with a new contract and
the delivery email sent with the signed PDF and selected images.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from openai import OpenAI

from studioflow.utils.dates import to_iso, utcnow


load_dotenv()

logger = logging.getLogger(__name__)


DEEPINFRA_BASE_URL = "https://api.deepinfra.com/v1/openai"
QWEN_MODEL = "Qwen/Qwen3-235B-A22B-Instruct-2507"
MAX_TOKENS = 900
DEFAULT_TEMPERATURE = 0.35

COMPANY_NAME = "Edge Talent"
FROM_ADDR = "contracts@edgetalent.co.uk"
SIGNING_VALID_DAYS = 7
PROMPTS_DIR = Path(__file__).parent / "prompts"


class CommsError(Exception):
    """Raised when email generation fails."""


@dataclass
class GeneratedEmail:
    """Structured outbound email."""

    from_addr: str
    to_addrs: List[str]
    subject: str = ""
    body: str = ""
    attachments: List[str] = field(default_factory=list)
    email_type: str = ""
    generated_at: str = field(default_factory=lambda: to_iso(utcnow()))

    def to_text(self) -> str:
        """Outbox preview: headers, body, then one line per attached file."""
        lines = [
            f"From: {self.from_addr}",
            f"To: {', '.join(self.to_addrs)}",
            f"Subject: {self.subject or '(no subject)'}",
            "",
            self.body.strip(),
        ]
        if self.attachments:
            lines.extend(["", f"Attachments ({len(self.attachments)}):"])
            lines.extend(f"  - {name}" for name in self.attachments)
        return "\n".join(lines) + "\n"


def load_comms_prompt(name: str = "comms_prompt") -> str:
    """Read a system prompt shipped in the package's prompts/ folder."""
    prompt_path = PROMPTS_DIR / f"{name}.md"
    try:
        return prompt_path.read_text(encoding="utf-8")
    except OSError as e:
        raise CommsError(f"Email prompt {name!r} is missing from {PROMPTS_DIR}") from e


def format_gbp(value: Any) -> str:
    try:
        return f"£{float(value):,.2f}"
    except (TypeError, ValueError):
        return str(value or "").strip()


def _missing_facts(body: str, facts: Dict[str, str]) -> List[str]:
    """Names of the facts a phrased body dropped or mangled.

    Links must survive byte for byte since the signing token is case
    sensitive. Other values are matched ignoring case and spacing, and a
    whole-pound amount may lose its ".00".
    """
    squashed = " ".join(body.split()).casefold()
    missing: List[str] = []
    for name, value in facts.items():
        text = str(value or "").strip()
        if not text:
            continue
        if text.startswith(("http://", "https://")):
            found = text in body
        else:
            wanted = " ".join(text.split()).casefold()
            found = wanted in squashed or (
                wanted.endswith(".00") and re.search(re.escape(wanted[:-3]) + r"(?![\d.,])", squashed) is not None
            )
        if not found:
            missing.append(name)
    return missing


def _call_comms_llm(
    email_type: str,
    context: Dict[str, Any],
    required_fields: Dict[str, str],
    system_prompt: str,
    temperature: float = DEFAULT_TEMPERATURE,
    repair_missing: Optional[List[str]] = None,
) -> str:
    api_key = os.getenv("DEEPINFRA_API_KEY")
    if not api_key:
        raise CommsError(
            "DEEPINFRA_API_KEY environment variable not set. "
            "Set it to enable LLM-phrased emails."
        )

    client = OpenAI(api_key=api_key, base_url=DEEPINFRA_BASE_URL)

    facts = "\n".join(
        f"- {key}: {value}" for key, value in required_fields.items() if value is not None and str(value).strip()
    )
    parts = [
        f"Write the {email_type} email body for this customer.",
        f"required_fields (copy each value exactly):\n{facts}",
        f"context: {json.dumps(context, default=str)}",
    ]
    if repair_missing:
        parts.append(
            "Your last body left out: "
            + ", ".join(repair_missing)
            + ". Rewrite it with those values and nothing new."
        )
    user_message = "\n\n".join(parts)

    response = client.chat.completions.create(
        model=QWEN_MODEL,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ],
        max_tokens=MAX_TOKENS,
        temperature=temperature,
    )
    content = response.choices[0].message.content
    if not content:
        raise CommsError("LLM returned empty email body")
    return content.strip()


def _phrase_body(
    email_type: str,
    facts: Dict[str, str],
    template_body: str,
    context: Dict[str, Any],
) -> str:
    """Ask the model for a warmer body; keep the template if it drops a fact.

    The model gets one chance to put back what it left out.
    """
    system_prompt = load_comms_prompt()
    body = _call_comms_llm(email_type, context, facts, system_prompt)
    missing = _missing_facts(body, facts)
    if not missing:
        return body

    body = _call_comms_llm(email_type, context, facts, system_prompt, repair_missing=missing)
    still_missing = _missing_facts(body, facts)
    if not still_missing:
        return body

    logger.warning("%s body kept dropping %s; sending the template", email_type, ", ".join(still_missing))
    return template_body


def _signing_request_template(
    customer_name: str,
    signing_url: str,
    total: str,
    expires_on: str,
) -> str:
    lines = [
        f"Dear {customer_name}," if customer_name else "Hello,",
        "",
        f"Thank you for choosing {COMPANY_NAME}! Your contract is ready for review and signing.",
        f"Please complete this within {SIGNING_VALID_DAYS} days to confirm your order.",
    ]
    if total:
        lines.append(f"Order total: {total}")
    lines.extend(
        [
            "",
            f"Review and sign your contract here: {signing_url}",
        ]
    )
    if expires_on:
        lines.append(f"This link expires on {expires_on}.")
    lines.extend(["", "Kind regards,", COMPANY_NAME])
    return "\n".join(lines)


def _delivery_template(
    customer_name: str,
    invoice_number: str,
    photo_count: int,
    has_pdf: bool,
) -> str:
    lines = [
        f"Dear {customer_name}," if customer_name else "Hello,",
        "",
        f"Thank you for signing your contract with {COMPANY_NAME}.",
    ]
    if invoice_number:
        lines.append(f"Invoice number: {invoice_number}")
    lines.extend(["", "Attached to this email:"])
    if has_pdf:
        lines.append("- Your signed contract (PDF)")
    if photo_count:
        lines.append(f"- Your {photo_count} selected images (ZIP file)")
    lines.extend(["", "Kind regards,", COMPANY_NAME])
    return "\n".join(lines)


def build_contract_signing_email(
    to_email: str,
    customer_name: str,
    signing_url: str,
    total: Any = None,
    expires_at: Optional[datetime] = None,
    use_llm: bool = False,
) -> GeneratedEmail:
    """Build the "contract ready for signing" email."""
    if not to_email:
        raise CommsError("Signing email needs a recipient")
    if not signing_url:
        raise CommsError("Signing email needs a signing URL")

    total_text = format_gbp(total) if total else ""
    expires_on = expires_at.strftime("%d/%m/%Y") if expires_at else ""
    body = _signing_request_template(customer_name, signing_url, total_text, expires_on)
    if use_llm:
        body = _phrase_body(
            "CONTRACT_SIGNING_REQUEST",
            {"signing_url": signing_url, "total": total_text},
            body,
            context={
                "customer_name": customer_name,
                "signing_url": signing_url,
                "total": total_text,
                "expires_on": expires_on,
                "valid_days": SIGNING_VALID_DAYS,
            },
        )

    return GeneratedEmail(
        email_type="CONTRACT_SIGNING_REQUEST",
        from_addr=FROM_ADDR,
        to_addrs=[to_email],
        subject=f"{COMPANY_NAME} - Your Contract is Ready for Signing",
        body=body,
    )


def build_delivery_email(
    to_email: str,
    customer_name: str,
    invoice_number: str = "",
    pdf_filename: Optional[str] = None,
    photo_filenames: Optional[List[str]] = None,
    use_llm: bool = False,
) -> GeneratedEmail:
    """Build the post-signature delivery email (signed PDF + images ZIP)."""
    if not to_email:
        raise CommsError("Delivery email needs a recipient")

    photos = list(photo_filenames or [])
    attachments: List[str] = []
    if pdf_filename:
        attachments.append(pdf_filename)
    if photos:
        attachments.append(f"images_{invoice_number or 'order'}.zip".replace(" ", "_"))

    body = _delivery_template(customer_name, invoice_number, len(photos), bool(pdf_filename))
    if use_llm:
        body = _phrase_body(
            "CONTRACT_DELIVERY",
            {"invoice_number": invoice_number},
            body,
            context={
                "customer_name": customer_name,
                "invoice_number": invoice_number,
                "photo_count": len(photos),
                "has_pdf": bool(pdf_filename),
                "attachments": attachments,
            },
        )

    return GeneratedEmail(
        email_type="CONTRACT_DELIVERY",
        from_addr=FROM_ADDR,
        to_addrs=[to_email],
        subject=f"{COMPANY_NAME} - Your Signed Contract and Images",
        body=body,
        attachments=attachments,
    )
