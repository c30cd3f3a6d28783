"""Suggestion chips shown above the AI task prompt."""

import re
import logging
from typing import Any, Dict, List

from .dates import parse_date
from .llm_client import LLMClient
from .tasks_service import TasksService

logger = logging.getLogger(__name__)

MAX_CHIP_LENGTH = 60

DEFAULT_CHIPS = [
    "Define project milestones",
    "Create task checklist",
    "Schedule team meeting",
    "Review requirements",
    "Update documentation",
]

BASE_CHIPS = [
    "Clear primary user value proposition",
    "Success metrics framework (activation, retention)",
    "Risk register with top mitigation themes",
    "Operational monitoring & alerting baseline",
    "Data governance & privacy compliance posture",
    "Stakeholder communication & escalation cadence",
    "Incremental rollout with feature flag governance",
    "Defined scope boundaries & out-of-scope list",
]

TYPE_CHIPS = {
    "Software Development": [
        "Modular service architecture principles",
        "Least-privilege authentication & authorization model",
        "Automated quality pipeline with coverage targets",
        "API versioning & backward compatibility contract",
        "Performance budgets for critical user journeys",
    ],
    "E-commerce Platform": [
        "Checkout funnel abandonment reduction objective",
        "Product taxonomy & attribute normalization",
        "Fraud detection & payment reconciliation",
        "Customer retention KPIs (LTV, churn)",
    ],
    "Marketing Campaign": [
        "Audience segmentation & messaging matrix",
        "Attribution & conversion tracking plan",
        "Content velocity & editorial workflow",
        "Channel benchmark targets (CTR, CPL)",
    ],
    "Design Project": [
        "Design system tokens & accessibility baseline",
        "Cross-platform interaction guidelines",
        "Persona-backed journey narrative",
        "UX research repository & synthesis cadence",
    ],
    "Infrastructure Project": [
        "High-availability topology & failover strategy",
        "Capacity planning & scaling thresholds",
        "Security hardening & secrets management",
        "Disaster recovery RTO/RPO targets",
    ],
}

CONTEXT_TYPES = [
    (r"\b(app|mobile|ios|android|react|vue|angular|frontend|backend|api|database|web|website|platform|software|code|development|programming)\b",
     "Software Development", "Technology", "High"),
    (r"\b(ecommerce|shop|store|payment|stripe|commerce|sales|product|retail|marketplace)\b",
     "E-commerce Platform", "Retail/Commerce", "High"),
    (r"\b(marketing|campaign|seo|social|content|brand|advertising|digital|growth|promotion)\b",
     "Marketing Campaign", "Marketing/Advertising", "Medium"),
    (r"\b(design|ui|ux|prototype|wireframe|figma|sketch|brand|logo|visual|graphics)\b",
     "Design Project", "Design/Creative", "Medium"),
    (r"\b(research|analysis|study|survey|market|user|data|analytics|insights)\b",
     "Research Study", "Research/Analytics", "Medium"),
    (r"\b(infrastructure|devops|deployment|ci/cd|cloud|aws|docker|kubernetes|security|server)\b",
     "Infrastructure Project", "Technology/Operations", "High"),
    (r"\b(content|education|training|course|documentation|knowledge|learning)\b",
     "Content/Education", "Education/Content", "Medium"),
]

EMOJI_RE = re.compile(
    "[\U0001F600-\U0001F64F\U0001F300-\U0001F5FF\U0001F680-\U0001F6FF\U0001F1E0-\U0001F1FF☀-⛿✀-➿]"
)

SYSTEM_PROMPT = (
    "You are a principal product & delivery strategist. Generate concise, goal-oriented, viability-focused "
    "project description components (NOT generic tasks) that help refine and articulate the project scope "
    "and direction."
)


def sanitize_chip(chip: str) -> str:
    chip = EMOJI_RE.sub("", str(chip)).strip()
    chip = re.sub(r"^[\"'`]+|[\"'`]+$", "", chip)
    chip = re.sub(r"\s+", " ", chip)
    words = chip.split(" ")
    if len(words) > 14:
        chip = " ".join(words[:14])
    if len(chip) > MAX_CHIP_LENGTH:
        chip = chip[:MAX_CHIP_LENGTH].rsplit(" ", 1)[0]
    return chip.rstrip(".;,:").strip()


def analyze_context(project: Dict[str, Any]) -> Dict[str, str]:
    text = f"{project.get('name') or ''} {project.get('description') or ''}".lower()
    context = {"type": "General Business", "industry": "General", "complexity": "Medium", "timeline": "Unknown"}
    for pattern, project_type, industry, complexity in CONTEXT_TYPES:
        if re.search(pattern, text):
            context.update(type=project_type, industry=industry, complexity=complexity)
            break

    if re.search(r"\b(enterprise|large|complex|advanced|sophisticated|scalable|distributed|multi)\b", text):
        context["complexity"] = "High"
    elif re.search(r"\b(simple|basic|small|minimal|prototype|mvp|proof|quick)\b", text):
        context["complexity"] = "Low"

    start, end = parse_date(project.get("start_date")), parse_date(project.get("end_date"))
    if start and end:
        days = (end - start).days
        if days <= 30:
            context["timeline"] = "Short-term (1 month or less)"
        elif days <= 90:
            context["timeline"] = "Medium-term (1-3 months)"
        else:
            context["timeline"] = "Long-term (more than 3 months)"
    return context


def contextual_fallback(context: Dict[str, str], needed: int) -> List[str]:
    chips = list(BASE_CHIPS) + TYPE_CHIPS.get(context["type"], [])
    if context["complexity"] == "High":
        chips += ["Cross-team dependency mapping & SLA alignment", "Architecture decision record process"]
    if context["timeline"].startswith("Short-term"):
        chips += ["Rapid validation milestone sequencing", "Early risk spike prioritization"]
    elif context["timeline"].startswith("Long-term"):
        chips += ["Quarterly thematic roadmap horizon", "Scalability & cost efficiency trajectory"]
    return chips[:max(0, needed)]


class SuggestionService:
    def __init__(self, llm: LLMClient, tasks: TasksService):
        self.llm = llm
        self.tasks = tasks

    def suggest_chips(self, project: Dict[str, Any], user_input: str = "", max_chips: int = 8) -> List[str]:
        """Up to ``max_chips`` short suggestions (clamped to 3-8)."""
        max_chips = max(3, min(8, int(max_chips or 8)))
        if not self.llm.is_configured:
            return DEFAULT_CHIPS[:max_chips]

        context = analyze_context(project)
        try:
            suggestions = self._from_llm(project, context, user_input, max_chips)
        except Exception as e:
            logger.error(f"Suggestion chips failed for project {project['id']}: {e}", exc_info=True)
            return DEFAULT_CHIPS[:max_chips]

        if not suggestions:
            return DEFAULT_CHIPS[:max_chips]
        if len(suggestions) < max_chips:
            for chip in contextual_fallback(context, max_chips * 2):
                if chip not in suggestions:
                    suggestions.append(chip)
        return suggestions[:max_chips]

    def _from_llm(self, project: Dict[str, Any], context: Dict[str, str], user_input: str, max_chips: int) -> List[str]:
        recent = [t["title"] for t in sorted(
            self.tasks.get_project_tasks(project["id"]), key=lambda t: t["id"], reverse=True
        )[:10]]
        prompt = (
            "PROJECT SNAPSHOT\n"
            f"Name: {project.get('name')}\n"
            f"Description: {project.get('description') or ''}\n"
            f"Type: {context['type']}\n"
            f"Complexity: {context['complexity']}\n"
            f"Industry: {context['industry']}\n"
            f"Timeline: {context['timeline']}\n"
            f"Recent Executed Items: {', '.join(recent) or 'None'}\n"
            f"User is typing: {user_input or 'nothing yet'}\n\n"
            f"Produce EXACTLY {max_chips} distinct suggestion strings of 4-10 words (max {MAX_CHIP_LENGTH} "
            "characters) that describe goal-oriented project definition elements: objectives, deliverables, "
            "success metrics, constraints, risks, integrations. No numbering, no bullets, no vague fluff.\n\n"
            'OUTPUT FORMAT (STRICT JSON): {"suggestions":["Suggestion 1","Suggestion 2"]}'
        )
        data = self.llm.chat_json(
            [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
            temperature=0.55,
            max_tokens=1800,
        )
        suggestions = []
        for raw in data.get("suggestions") or []:
            chip = sanitize_chip(raw)
            if chip and chip not in suggestions:
                suggestions.append(chip)
        return suggestions
