from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import httpx

from askeve_core.errors import ExternalServiceError
from askeve_core.models import ContentSnippet

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOP_WORDS = {
    "a", "about", "am", "and", "are", "can", "could", "do", "does", "for", "have", "how", "i",
    "if", "in", "is", "it", "me", "my", "of", "on", "or", "should", "tell", "the", "to", "what",
    "when", "which", "with", "worried", "you",
}


def _normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def _tokens(text: str) -> set[str]:
    return {token for token in _TOKEN_RE.findall((text or "").lower()) if token not in _STOP_WORDS}


def _safe_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class CatalogueEntry:
    title: str
    summary: str
    source_url: str
    keywords: frozenset[str]


def _entry(title: str, summary: str, slug: str, keywords: str) -> CatalogueEntry:
    return CatalogueEntry(
        title=title,
        summary=summary,
        source_url=f"https://eveappeal.org.uk/{slug}",
        keywords=frozenset(keywords.split()),
    )


CATALOGUE = (
    _entry(
        "ovarian cancer",
        "Ovarian cancer symptoms can be vague. Persistent bloating, feeling full quickly, pelvic or "
        "tummy pain and needing to wee more often are the most common signs. If they happen most days "
        "for three weeks or more, speak to your GP.",
        "gynaecological-cancers/ovarian-cancer",
        "ovarian ovary ovaries bloating bloated full appetite tummy abdominal pelvic wee urinate ca125",
    ),
    _entry(
        "cervical cancer",
        "Cervical cancer is almost always caused by HPV. Signs include bleeding between periods, after "
        "sex or after the menopause, unusual discharge and pain during sex. Regular cervical screening "
        "helps prevent it.",
        "gynaecological-cancers/cervical-cancer",
        "cervical cervix bleeding sex discharge periods hpv",
    ),
    _entry(
        "womb cancer",
        "Womb (endometrial) cancer is the most common gynaecological cancer in the UK. The main sign is "
        "abnormal bleeding, especially any bleeding after the menopause. This should always be checked "
        "by a GP.",
        "gynaecological-cancers/womb-cancer",
        "womb uterus uterine endometrial endometrium bleeding menopause postmenopausal periods heavy",
    ),
    _entry(
        "vulval cancer",
        "Vulval cancer is rare. Look out for a persistent itch, pain or soreness, a lump or wart-like "
        "growth, or changes in the colour or texture of the skin of the vulva.",
        "gynaecological-cancers/vulval-cancer",
        "vulval vulva itch itching lump soreness skin sore lichen",
    ),
    _entry(
        "vaginal cancer",
        "Vaginal cancer is one of the rarest gynaecological cancers. Symptoms can include bleeding after "
        "sex or the menopause, a smelly or blood-stained discharge and a lump in the vagina.",
        "gynaecological-cancers/vaginal-cancer",
        "vaginal vagina lump discharge bleeding smelly",
    ),
    _entry(
        "cervical screening",
        "Cervical screening (a smear test) checks for high-risk HPV, not for cancer. In England it is "
        "offered every 3 to 5 years from age 25 to 64. You can ask the nurse to use a smaller speculum "
        "or to take things slowly.",
        "information/cervical-screening",
        "screening smear test speculum invitation appointment result results colposcopy",
    ),
    _entry(
        "HPV",
        "HPV (human papillomavirus) is very common and most people will have it at some point. The "
        "body usually clears it within two years. Persistent high-risk HPV can cause cell changes, "
        "which screening picks up early.",
        "information/hpv",
        "hpv papillomavirus virus vaccine vaccination positive",
    ),
    _entry(
        "symptoms to look out for",
        "Know your body and what is normal for you. Unusual bleeding, persistent bloating, changes to "
        "the vulva and unexplained pelvic pain are worth getting checked. Most of the time it won't be "
        "cancer, but it is always best to find out.",
        "information/symptoms",
        "symptom symptoms signs sign bleeding bloating pain pelvic check normal worried",
    ),
    _entry(
        "genetic risk",
        "Some people have an inherited higher risk of gynaecological cancers, for example through BRCA "
        "gene changes or Lynch syndrome. If several close relatives have had ovarian, womb, breast or "
        "bowel cancer, talk to your GP about a referral.",
        "information/genetics",
        "brca gene genes genetic inherited family history lynch testing",
    ),
    _entry(
        "support after a diagnosis",
        "A diagnosis can bring a lot of questions. The Ask Eve nurses can talk through what happens "
        "next, and The Eve Appeal has guides on treatment, recovery and looking after your wellbeing.",
        "support",
        "support diagnosis diagnosed treatment recovery surgery chemotherapy wellbeing",
    ),
)


class CuratedContentService:
    """Ranks the bundled Eve Appeal summaries by keyword overlap."""

    def __init__(self, entries: tuple[CatalogueEntry, ...] = CATALOGUE) -> None:
        self.entries = entries

    def search(self, query: str, *, limit: int = 3) -> list[ContentSnippet]:
        tokens = _tokens(query)
        if not tokens:
            return []
        scored: list[tuple[float, int, CatalogueEntry]] = []
        for index, entry in enumerate(self.entries):
            vocabulary = entry.keywords | _tokens(entry.title)
            hits = len(tokens & vocabulary)
            if hits:
                scored.append((hits / len(tokens), index, entry))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [
            ContentSnippet(title=entry.title, summary=entry.summary, source_url=entry.source_url, score=round(score, 3))
            for score, _, entry in scored[: max(1, limit)]
        ]

    def health_check(self) -> bool:
        return bool(self.entries)


class SearchApiContentService:
    """Client for a hosted search index over The Eve Appeal's published pages."""

    def __init__(self, base_url: str, *, api_key: str | None = None, timeout: float = 8.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = (api_key or "").strip()
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["api-key"] = self.api_key
        return headers

    def search(self, query: str, *, limit: int = 3) -> list[ContentSnippet]:
        try:
            response = httpx.get(
                f"{self.base_url}/search",
                params={"q": query, "top": max(1, min(limit, 10))},
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json() if response.content else {}
        except httpx.HTTPError as exc:
            raise ExternalServiceError("content", str(exc)) from exc
        except ValueError as exc:
            raise ExternalServiceError("content", f"invalid search payload: {exc}") from exc

        if not isinstance(payload, dict):
            payload = {}
        rows = payload.get("results") or payload.get("value") or []
        snippets: list[ContentSnippet] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            title = _normalize_whitespace(str(row.get("title") or ""))
            summary = _normalize_whitespace(str(row.get("summary") or row.get("content") or ""))
            if not title or not summary:
                continue
            snippets.append(
                ContentSnippet(
                    title=title,
                    summary=summary[:600],
                    source_url=str(row.get("url") or row.get("source") or "").strip() or None,
                    score=_safe_float(row.get("score") or row.get("@search.score")),
                )
            )
        snippets.sort(key=lambda snippet: -snippet.score)
        return snippets[:limit]

    def health_check(self) -> bool:
        try:
            response = httpx.get(
                f"{self.base_url}/search",
                params={"q": "cervical screening", "top": 1},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.HTTPError:
            return False
        return response.status_code < 500
