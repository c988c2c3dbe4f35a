from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

import openai
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from errors import ProviderUnavailable

if TYPE_CHECKING:
    from langchain_openai import ChatOpenAI

logger = logging.getLogger("reviewreply.generation")

LANGUAGES = {
    "en": "English",
    "ro": "Romanian",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
}
DEFAULT_LANGUAGE = "en"
DEFAULT_BUSINESS_TYPE = "general"
AUDIT_TEXT_LIMIT = 500

SYSTEM_PROMPT = (
    "You are a professional customer service assistant. Generate helpful, appropriate "
    "responses to customer reviews in the requested language and tone."
)

TONE_INSTRUCTIONS = {
    "professional": "Write a professional, business-appropriate response.",
    "friendly": "Write a warm, friendly, and personable response.",
    "apologetic": "Write an apologetic response that acknowledges any issues mentioned.",
    "grateful": "Write a grateful response that thanks the customer for their feedback.",
}

FALLBACK_RESPONSES = {
    "en": {
        "professional": "Thank you for your feedback. We appreciate you taking the time to share your experience with us.",
        "friendly": "Thanks so much for your review! We really appreciate you sharing your thoughts with us.",
        "apologetic": "We sincerely apologize for any inconvenience. Your feedback is important to us and we will work to improve.",
        "grateful": "Thank you so much for your wonderful feedback! We truly appreciate your support.",
    },
    "ro": {
        "professional": "Vă mulțumim pentru feedback. Apreciem că ați acordat timp pentru a ne împărtăși experiența dumneavoastră.",
        "friendly": "Mulțumim mult pentru recenzie! Ne bucurăm sincer că ne-ați spus părerea.",
        "apologetic": "Ne cerem scuze sincer pentru neplăcerile create. Feedback-ul dumneavoastră este important și vom lucra să ne îmbunătățim.",
        "grateful": "Vă mulțumim din suflet pentru feedback-ul minunat! Apreciem cu adevărat sprijinul dumneavoastră.",
    },
    "es": {
        "professional": "Gracias por sus comentarios. Agradecemos que se haya tomado el tiempo de compartir su experiencia con nosotros.",
        "friendly": "¡Muchas gracias por tu reseña! Nos encanta que compartas tu opinión con nosotros.",
        "apologetic": "Le pedimos sinceras disculpas por las molestias. Sus comentarios son importantes y trabajaremos para mejorar.",
        "grateful": "¡Muchísimas gracias por sus maravillosos comentarios! Agradecemos de verdad su apoyo.",
    },
    "fr": {
        "professional": "Merci pour votre avis. Nous vous remercions d'avoir pris le temps de partager votre expérience.",
        "friendly": "Merci beaucoup pour votre avis ! Nous sommes ravis que vous ayez partagé votre ressenti.",
        "apologetic": "Nous vous présentons nos sincères excuses pour ce désagrément. Votre avis compte et nous allons nous améliorer.",
        "grateful": "Un grand merci pour votre merveilleux retour ! Nous apprécions sincèrement votre soutien.",
    },
    "de": {
        "professional": "Vielen Dank für Ihr Feedback. Wir schätzen es, dass Sie sich die Zeit genommen haben, Ihre Erfahrung mit uns zu teilen.",
        "friendly": "Vielen Dank für Ihre Bewertung! Wir freuen uns sehr, dass Sie Ihre Gedanken mit uns teilen.",
        "apologetic": "Wir entschuldigen uns aufrichtig für die Unannehmlichkeiten. Ihr Feedback ist uns wichtig und wir arbeiten an Verbesserungen.",
        "grateful": "Herzlichen Dank für Ihr wunderbares Feedback! Wir wissen Ihre Unterstützung sehr zu schätzen.",
    },
    "it": {
        "professional": "Grazie per il suo feedback. Apprezziamo che abbia dedicato del tempo a condividere la sua esperienza con noi.",
        "friendly": "Grazie mille per la recensione! Siamo davvero felici che tu abbia condiviso le tue impressioni.",
        "apologetic": "Ci scusiamo sinceramente per il disagio. Il suo feedback è importante per noi e lavoreremo per migliorare.",
        "grateful": "Grazie di cuore per il suo splendido feedback! Apprezziamo davvero il suo sostegno.",
    },
}


@dataclass(frozen=True)
class SamplingPolicy:
    max_tokens: int = 250
    temperature: float = 0.7
    presence_penalty: float = 0.1
    frequency_penalty: float = 0.1


REPLY_POLICY = SamplingPolicy()


@dataclass(frozen=True)
class Completion:
    text: str
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class GenerationResult:
    text: str
    success: bool
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    duration_ms: int = 0
    error: str | None = None

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


def build_prompt(
    review_text: str,
    tone: str,
    language: str,
    business_type: str = DEFAULT_BUSINESS_TYPE,
    business_name: str | None = None,
) -> str:
    """Build the user prompt; identical inputs always give an identical prompt."""
    language_name = LANGUAGES.get(language, LANGUAGES[DEFAULT_LANGUAGE])
    lines = [
        f"Please write a {tone} response to this customer review in {language_name}.",
        "",
        f'Review: "{review_text}"',
        "",
        "Instructions:",
        f"- Respond entirely in {language_name}",
        f"- Use a {tone} tone: {TONE_INSTRUCTIONS.get(tone, TONE_INSTRUCTIONS['professional'])}",
        "- Keep it concise (under 100 words)",
        "- Be genuine and helpful",
        "- Address specific points when relevant",
        "- Thank the customer for their feedback",
    ]
    if business_type and business_type != DEFAULT_BUSINESS_TYPE:
        lines.append(f"- The business is in the {business_type} sector")
    if business_name:
        lines.append(f"- You represent {business_name}")
    lines.append("- Include a call to action when appropriate")
    return "\n".join(lines)


def fallback_response(tone: str, language: str) -> str:
    by_tone = FALLBACK_RESPONSES.get(language) or FALLBACK_RESPONSES[DEFAULT_LANGUAGE]
    return by_tone.get(tone) or FALLBACK_RESPONSES[DEFAULT_LANGUAGE]["professional"]


def estimate_cost(
    input_tokens: int,
    output_tokens: int,
    price_per_input_token: float,
    price_per_output_token: float,
) -> float:
    return input_tokens * price_per_input_token + output_tokens * price_per_output_token


def _llm_kwargs(
    api_key: str,
    model: str,
    base_url: str | None,
    timeout: float,
    policy: SamplingPolicy,
) -> dict:
    from langchain_openai import ChatOpenAI

    params = inspect.signature(ChatOpenAI.__init__).parameters
    kwargs: dict[str, object] = {
        "model": model,
        "api_key": api_key,
        "temperature": policy.temperature,
        "presence_penalty": policy.presence_penalty,
        "frequency_penalty": policy.frequency_penalty,
        "timeout": timeout,
        "max_retries": 1,
    }
    if base_url:
        kwargs["base_url"] = base_url
    if "max_completion_tokens" in params and "max_tokens" not in params:
        kwargs["max_completion_tokens"] = policy.max_tokens
    else:
        kwargs["max_tokens"] = policy.max_tokens
    return kwargs


def _token_counts(response: Any) -> tuple[int, int]:
    usage = getattr(response, "usage_metadata", None) or {}
    if usage:
        return int(usage.get("input_tokens") or 0), int(usage.get("output_tokens") or 0)
    metadata = getattr(response, "response_metadata", None) or {}
    token_usage = metadata.get("token_usage") or {}
    return int(token_usage.get("prompt_tokens") or 0), int(token_usage.get("completion_tokens") or 0)


class CompletionProvider:
    """Chat completion client; provider failures surface as ``ProviderUnavailable``."""

    def __init__(
        self,
        api_key: str | None,
        model: str,
        base_url: str | None = None,
        timeout: float = 30.0,
        policy: SamplingPolicy = REPLY_POLICY,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._policy = policy
        self._llm: ChatOpenAI | None = None

    def _get_llm(self) -> "ChatOpenAI":
        if self._llm is None:
            from langchain_openai import ChatOpenAI

            if not self._api_key:
                raise ProviderUnavailable(ProviderUnavailable.TRANSPORT_ERROR, "OPENAI_API_KEY is not set.")
            self._llm = ChatOpenAI(
                **_llm_kwargs(self._api_key, self.model, self._base_url, self._timeout, self._policy)
            )
        return self._llm

    def complete(self, messages: Sequence[BaseMessage]) -> Completion:
        llm = self._get_llm()
        try:
            response = llm.invoke(list(messages))
        except openai.RateLimitError as exc:
            if getattr(exc, "code", None) == "insufficient_quota":
                raise ProviderUnavailable(ProviderUnavailable.QUOTA_EXCEEDED, str(exc)) from exc
            raise ProviderUnavailable(ProviderUnavailable.RATE_LIMITED, str(exc)) from exc
        except openai.APIError as exc:
            raise ProviderUnavailable(ProviderUnavailable.TRANSPORT_ERROR, str(exc)) from exc

        text = getattr(response, "content", None)
        if not isinstance(text, str) or not text.strip():
            raise ProviderUnavailable(ProviderUnavailable.TRANSPORT_ERROR, "Empty completion.")
        input_tokens, output_tokens = _token_counts(response)
        return Completion(text=text.strip(), input_tokens=input_tokens, output_tokens=output_tokens)


class GenerationGateway:
    """Turns one review into one reply, degrading to canned text on provider failure."""

    def __init__(
        self,
        provider: Any,
        price_per_input_token: float,
        price_per_output_token: float,
    ) -> None:
        self._provider = provider
        self._price_in = price_per_input_token
        self._price_out = price_per_output_token

    def generate(
        self,
        review_text: str,
        tone: str,
        language: str = DEFAULT_LANGUAGE,
        business_type: str = DEFAULT_BUSINESS_TYPE,
        business_name: str | None = None,
    ) -> GenerationResult:
        prompt = build_prompt(review_text, tone, language, business_type, business_name)
        messages = [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=prompt)]
        model = getattr(self._provider, "model", "unknown")
        started = time.perf_counter()
        try:
            completion = self._provider.complete(messages)
        except ProviderUnavailable as exc:
            logger.warning("Completion provider failed (%s); using fallback reply.", exc.kind)
            return GenerationResult(
                text=fallback_response(tone, language),
                success=False,
                model=model,
                duration_ms=int((time.perf_counter() - started) * 1000),
                error=f"{exc.kind}: {exc.message}",
            )

        return GenerationResult(
            text=completion.text,
            success=True,
            model=model,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            cost=estimate_cost(
                completion.input_tokens,
                completion.output_tokens,
                self._price_in,
                self._price_out,
            ),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
