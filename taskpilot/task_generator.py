"""
Task Generator Module

Generates project tasks with the LLM in batches so the requested count is met,
normalizes what the model returns into task records, and runs the preview and
accept flows that charge the user's monthly AI allowance.
"""

import re
import json
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from .dates import to_date_string
from .errors import AINotConfiguredError, UsageLimitError, ValidationError
from .llm_client import LLMClient, NOT_CONFIGURED_MESSAGE
from .tasks_service import TasksService
from .users_service import UsersService

logger = logging.getLogger(__name__)

MAX_TASKS_PER_CALL = 8
BATCH_RETRIES = 2
MAX_GENERATE = 50
MAX_PREVIEW = 8
LIMIT_MESSAGE = "You have reached your AI task generation limit for this month. Upgrade your plan for more tasks."

SYSTEM_PROMPT = (
    "You are an expert senior project manager with 15+ years of experience across software development, "
    "business operations, marketing, and technical implementation. You create highly detailed, actionable "
    "tasks that professionals would actually execute in real-world scenarios. Always return STRICT, VALID JSON "
    "that exactly matches the requested schema and task count. Do not include any prose outside JSON."
)

PROJECT_TYPES = [
    (r"\b(enterprise|saas|platform|microservices|distributed|scalable|cloud-native|api-first)\b",
     "Enterprise Software Architecture", "Enterprise"),
    (r"\b(app|mobile|ios|android|react|vue|angular|frontend|backend|api|database|web|website|fullstack|devops)\b",
     "Software Development & Engineering", "Advanced"),
    (r"\b(ai|machine learning|ml|data science|analytics|big data|neural|algorithm|artificial intelligence)\b",
     "AI & Data Science", "Enterprise"),
    (r"\b(blockchain|crypto|defi|smart contract|web3|nft|cryptocurrency)\b",
     "Blockchain & Web3 Development", "Enterprise"),
    (r"\b(security|penetration|audit|compliance|gdpr|hipaa|sox|iso27001|cybersecurity)\b",
     "Security & Compliance", "Advanced"),
    (r"\b(infrastructure|devops|deployment|ci/cd|cloud|aws|azure|gcp|docker|kubernetes|terraform)\b",
     "DevOps & Cloud Infrastructure", "Advanced"),
    (r"\b(fintech|financial|banking|payment|trading|investment|insurance|regulatory)\b",
     "Financial Technology", "Enterprise"),
    (r"\b(ecommerce|marketplace|shop|store|payment|stripe|commerce|sales|product|inventory)\b",
     "E-commerce & Digital Commerce", "Advanced"),
    (r"\b(marketing|campaign|seo|social|content|brand|advertising|digital|growth|conversion)\b",
     "Digital Marketing & Growth", "Intermediate"),
    (r"\b(design|ui|ux|prototype|wireframe|figma|sketch|brand|logo|visual|user experience)\b",
     "Design & User Experience", "Intermediate"),
    (r"\b(research|analysis|study|survey|market|user|data|analytics|business intelligence)\b",
     "Research & Business Intelligence", "Intermediate"),
    (r"\b(healthcare|medical|patient|clinical|hospital|telemedicine|health tech)\b",
     "Healthcare Technology", "Enterprise"),
    (r"\b(education|learning|training|course|student|academic|edtech|lms)\b",
     "Educational Technology", "Advanced"),
]

COMPLEXITY_OVERRIDES = [
    (r"\b(enterprise|large scale|mission critical|high availability|fault tolerant|global|international|multi-tenant)\b",
     "Enterprise"),
    (r"\b(advanced|sophisticated|complex|technical|professional|comprehensive|strategic)\b", "Advanced"),
    (r"\b(simple|basic|small|minimal|prototype|mvp|proof of concept|starter|beginner)\b", "Standard"),
]

CATEGORY_BASE_HOURS = {
    "Strategic Planning": 32,
    "Technical Architecture": 40,
    "Development": 32,
    "Design & UX": 28,
    "Quality Assurance": 24,
    "DevOps & Infrastructure": 36,
    "Security & Compliance": 28,
    "Data & Analytics": 30,
    "Business Intelligence": 26,
    "Stakeholder Management": 16,
    "Research": 20,
    "Planning": 24,
    "Design": 20,
    "Content": 12,
    "QA": 20,
    "Marketing": 16,
    "Operations": 28,
    "Management": 8,
}

COMPLEXITY_MULTIPLIERS = {
    "Standard": 0.7,
    "Intermediate": 1.0,
    "Advanced": 1.6,
    "Enterprise": 2.2,
    "Simple": 0.6,
    "Medium": 1.0,
    "Complex": 1.8,
}

AI_PRIORITIES = {"critical": "urgent", "urgent": "urgent", "high": "high", "medium": "medium", "low": "low"}


def analyze_project_context(project: Dict[str, Any], user_prompt: str = "") -> Dict[str, str]:
    """Guess the project type and complexity level from its name, description and the prompt."""
    text = " ".join([
        str(project.get("name") or ""), str(project.get("description") or ""), user_prompt or "",
    ]).lower()

    project_type, complexity = "General Business Project", "Intermediate"
    for pattern, matched_type, matched_complexity in PROJECT_TYPES:
        if re.search(pattern, text):
            project_type, complexity = matched_type, matched_complexity
            break

    for pattern, level in COMPLEXITY_OVERRIDES:
        if re.search(pattern, text):
            complexity = level
            break

    return {"type": project_type, "complexity": complexity}


def compute_max_tokens(batch_target: int, long_form: bool) -> int:
    words_per_task = 320 if long_form else 160
    tokens_per_task = int(round(words_per_task * 1.35)) + 120
    return max(2000, min(7000, tokens_per_task * batch_target + 600))


def calculate_estimated_hours(complexity: str, category: str, ai_estimate: Any = None) -> int:
    try:
        base_hours = int(float(ai_estimate))
    except (TypeError, ValueError):
        base_hours = 0
    if not base_hours:
        base_hours = CATEGORY_BASE_HOURS.get(category, 24)
    hours = int(round(base_hours * COMPLEXITY_MULTIPLIERS.get(complexity, 1.0)))
    return max(8, min(72, hours))


def normalize_range(start: Optional[str], end: Optional[str], project: Dict[str, Any],
                    today: Optional[date] = None) -> Tuple[str, str]:
    """Order the dates and clamp them into the project's timeline."""
    project_start = to_date_string(project.get("start_date"))
    project_end = to_date_string(project.get("end_date"))

    start = start or project_start or (today or date.today()).isoformat()
    end = end or start
    if start > end:
        start, end = end, start
    if project_start and start < project_start:
        start = project_start
    if project_end and end > project_end:
        end = project_end
    if end < start:
        end = start
    return start, end


def normalize_tasks(received: List[Any], project: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Map raw model output to task dicts; entries without a title are dropped."""
    out = []
    for task in received:
        if not isinstance(task, dict):
            continue
        title = str(task.get("title") or "").strip()[:100]
        if not title:
            continue
        start, end = normalize_range(
            to_date_string(task.get("start_date")), to_date_string(task.get("end_date")), project
        )
        complexity = str(task.get("complexity") or "Medium")
        category = str(task.get("category") or "Development")
        out.append({
            "title": title,
            "description": str(task.get("description") or ""),
            "start_date": start,
            "end_date": end,
            "category": category,
            "priority": AI_PRIORITIES.get(str(task.get("priority") or "").lower(), "medium"),
            "estimated_hours": calculate_estimated_hours(complexity, category, task.get("estimated_hours")),
            "complexity": complexity,
            "dependencies": str(task.get("dependencies") or ""),
            "deliverables": str(task.get("deliverables") or ""),
        })
    return out


def dedupe_by_title(tasks: List[Dict[str, Any]], chosen: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    """Drop tasks whose title repeats, ignoring case, here or in ``chosen``."""
    seen = {t["title"].lower() for t in chosen or []}
    out = []
    for task in tasks:
        key = task["title"].lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(task)
    return out


def decode_tasks(raw: str) -> List[Any]:
    raw = re.sub(r"^```(?:json)?|```$", "", (raw or "").strip(), flags=re.MULTILINE)
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        # Salvage the outer object when the model wrapped it in prose
        match = re.search(r"\{.*\}", raw, re.DOTALL)
        if not match:
            return []
        try:
            decoded = json.loads(match.group(0))
        except json.JSONDecodeError:
            return []
    if isinstance(decoded, dict) and isinstance(decoded.get("tasks"), list):
        return decoded["tasks"]
    return []


class TaskGenerator:
    """AI task generation for a project."""

    def __init__(self, llm: LLMClient, tasks: TasksService, users: UsersService):
        self.llm = llm
        self.tasks = tasks
        self.users = users

    def _build_batch_prompt(self, project: Dict[str, Any], context: Dict[str, str], user_prompt: str,
                            index_start: int, batch_count: int, desc_words: str, total: int,
                            chosen_titles: List[str]) -> str:
        already = ""
        if chosen_titles:
            already = "AVOID DUPLICATES WITH THESE EXISTING TITLES:\n- " + "\n- ".join(chosen_titles) + "\n\n"
        index_end = index_start + batch_count - 1

        return f"""PROJECT ANALYSIS:
Name: {project.get('name')}
Description: {project.get('description') or ''}
Timeline: {project.get('start_date') or ''} to {project.get('end_date') or ''}
Context Type: {context['type']}
Complexity Level: {context['complexity']}

USER REQUIREMENTS:
{user_prompt}

{already}TASK GENERATION REQUIREMENTS (BATCH: {index_start}-{index_end} of {total}):
Generate exactly {batch_count} highly detailed, professional-grade tasks.

1) GRANULAR & ACTIONABLE: A team member should know exactly what to do.
2) CONTEXTUALLY RELEVANT: Align with project type, industry standards, and domain expertise.
3) PROFESSIONALLY STRUCTURED: Include deliverables, acceptance criteria, and dependencies.
4) REALISTICALLY SCOPED: Each task is 1-3 days of work for one person.
5) Consider {context['complexity']} project complexity level.

OUTPUT FORMAT (STRICT JSON ONLY):
{{
  "tasks": [
    {{
      "title": "Specific, action-oriented title (80-100 chars)",
      "description": "Objective, deliverables, acceptance criteria, tools and expected outcome ({desc_words} words)",
      "start_date": "YYYY-MM-DD or null",
      "end_date": "YYYY-MM-DD or null",
      "category": "Research|Planning|Development|Design|Content|QA|Marketing|Operations|Management",
      "priority": "High|Medium|Low",
      "estimated_hours": "Integer 4-80",
      "complexity": "Simple|Medium|Complex",
      "dependencies": "Brief description of what must be completed first",
      "deliverables": "Specific outputs/artifacts that will be produced"
    }}
  ]
}}

CRITICAL:
- Return EXACTLY {batch_count} tasks in the "tasks" array.
- DO NOT include any content outside the JSON object.
- Ensure each title is unique and not in the provided existing titles list."""

    def _call(self, prompt: str, max_tokens: int, temperature: float = 0.7) -> List[Any]:
        response = self.llm.chat_completion(
            [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=True,
        )
        return decode_tasks(response["content"])

    def generate_tasks(self, project: Dict[str, Any], count: int, user_prompt: str = "") -> List[Dict[str, Any]]:
        """Generate ``count`` normalized tasks for ``project``; nothing is saved."""
        if not self.llm.is_configured:
            raise AINotConfiguredError(NOT_CONFIGURED_MESSAGE)

        count = max(1, min(MAX_GENERATE, int(count)))
        user_prompt = user_prompt or ""
        context = analyze_project_context(project, user_prompt)
        logger.info(f"Generating {count} tasks for project {project['id']} ({context['type']}, {context['complexity']})")

        chosen = []
        index = 1
        long_form = count <= MAX_TASKS_PER_CALL
        while len(chosen) < count:
            batch_target = min(MAX_TASKS_PER_CALL, count - len(chosen))
            desc_words = "200-400" if long_form else "120-220"
            max_tokens = compute_max_tokens(batch_target, long_form)

            batch = []
            for attempt in range(BATCH_RETRIES + 1):
                prompt = self._build_batch_prompt(
                    project, context, user_prompt, index, batch_target, desc_words, count,
                    [t["title"] for t in chosen],
                )
                received = self._call(prompt, max_tokens)
                batch = dedupe_by_title(normalize_tasks(received, project), chosen)[:batch_target]
                if len(batch) >= batch_target:
                    break
                logger.warning(f"Batch at {index} returned {len(batch)}/{batch_target} tasks (attempt {attempt + 1})")
                # Tighter retry
                desc_words = "90-140"
                max_tokens = compute_max_tokens(batch_target, False)

            if not batch:
                break
            chosen.extend(batch)
            index += len(batch)

        if len(chosen) < count:
            chosen.extend(self._compact_fallback(project, context, user_prompt, count - len(chosen), index, count, chosen))
        if len(chosen) < count:
            chosen.extend(self._placeholders(project, context, count - len(chosen), len(chosen)))

        return chosen[:count]

    def _compact_fallback(self, project: Dict[str, Any], context: Dict[str, str], user_prompt: str,
                          remaining: int, index: int, total: int,
                          chosen: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        prompt = self._build_batch_prompt(project, context, user_prompt, index, remaining, "80-120", total, [])
        try:
            received = self._call(prompt, compute_max_tokens(remaining, False), temperature=0.5)
        except Exception as e:
            logger.error(f"Compact fallback generation failed for project {project['id']}: {e}")
            return []
        return dedupe_by_title(normalize_tasks(received, project), chosen)[:remaining]

    def _placeholders(self, project: Dict[str, Any], context: Dict[str, str],
                      needed: int, offset: int) -> List[Dict[str, Any]]:
        logger.warning(f"Padding {needed} placeholder task(s) for project {project['id']}")
        start, end = normalize_range(None, None, project)
        return [
            {
                "title": f"{project.get('name')}: follow-up task {offset + i + 1}",
                "description": f"Define and complete the next step for this {context['type'].lower()} project.",
                "start_date": start,
                "end_date": end,
                "category": "Planning",
                "priority": "medium",
                "estimated_hours": calculate_estimated_hours(context["complexity"], "Planning"),
                "complexity": context["complexity"],
                "dependencies": "",
                "deliverables": "",
            }
            for i in range(needed)
        ]

    # --- Flows ---

    def _check_allowance(self, user: Dict[str, Any], count: int):
        if not self.users.can_generate_ai_tasks(user, count):
            summary = self.users.usage_summary(user)
            raise UsageLimitError(
                LIMIT_MESSAGE,
                limit=summary["ai_tasks"]["limit"],
                used=summary["ai_tasks"]["used"],
                plan=summary["plan"],
            )

    def generate_and_save(self, project: Dict[str, Any], user: Dict[str, Any], count: int,
                          user_prompt: str = "") -> List[Dict[str, Any]]:
        if not 1 <= int(count) <= MAX_GENERATE:
            raise ValidationError(f"The count must be between 1 and {MAX_GENERATE}.")
        self._check_allowance(user, count)
        generated = self.generate_tasks(project, count, user_prompt)
        return self._persist(project, user, generated)

    def preview(self, project: Dict[str, Any], user: Dict[str, Any], count: int, user_prompt: str = "",
                pinned_tasks: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Pinned tasks plus freshly generated ones; nothing is saved or charged."""
        if not 1 <= int(count) <= MAX_PREVIEW:
            raise ValidationError(f"The count must be between 1 and {MAX_PREVIEW}.")
        pinned = list(pinned_tasks or [])
        limit_exceeded = not self.users.can_generate_ai_tasks(user, count)

        needed = max(0, count - len(pinned))
        new_tasks = self.generate_tasks(project, needed, user_prompt) if needed else []
        logger.info(f"Preview for project {project['id']}: {len(pinned)} pinned, {len(new_tasks)} new")

        return {
            "project_id": project["id"],
            "generated": pinned + new_tasks,
            "limit_exceeded": limit_exceeded,
            "can_accept": not limit_exceeded,
            "usage": self.users.usage_summary(user)["ai_tasks"],
        }

    def accept(self, project: Dict[str, Any], user: Dict[str, Any],
               generated: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Persist previewed tasks and charge them to the user's allowance."""
        generated = [t for t in generated or [] if (t.get("title") or "").strip()]
        if not generated:
            raise ValidationError("At least one task is required.")
        self._check_allowance(user, len(generated))
        return self._persist(project, user, generated)

    def _persist(self, project: Dict[str, Any], user: Dict[str, Any],
                 generated: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Save all tasks in one write, then charge only what was created."""
        items = []
        for item in generated:
            data = {k: v for k, v in item.items() if k not in ("id", "status", "assignee_id", "parent_id", "duplicate_of")}
            data["title"] = str(data.get("title", ""))[:255]
            data["status"] = "todo"
            data.setdefault("milestone", False)
            if data.get("priority") not in AI_PRIORITIES.values():
                data["priority"] = AI_PRIORITIES.get(str(data.get("priority") or "").lower(), "medium")
            items.append(data)
        created = self.tasks.create_tasks(project, user, items)
        self.users.increment_ai_task_usage(user, len(created))
        logger.info(f"Saved {len(created)} AI-generated task(s) to project {project['id']}")
        return created
