from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import Markup

from entitlements import EntitlementQuery, evaluate
from plans import get_plan, is_monthly

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


@dataclass(frozen=True)
class PromptOptions:
    style_class: str = ""
    action_url: str = "/upgrade"
    csrf_token: Optional[str] = None


@dataclass
class UpgradePrompt:
    query: EntitlementQuery
    html: Markup
    on_upgrade: Callable[[str], None] = field(repr=False)

    @property
    def required_plan(self) -> str:
        return self.query.required_plan.value

    def activate(self):
        # Errors from the callback belong to the caller's upgrade flow.
        self.on_upgrade(self.required_plan)

    def __html__(self):
        return self.html


def render_upgrade_prompt(
    query: EntitlementQuery,
    on_upgrade: Callable[[str], None],
    options: Optional[PromptOptions] = None,
) -> Optional[UpgradePrompt]:
    """Render the gated-feature notice for ``query``.

    Returns None when the current plan already covers the required one, so the
    caller emits nothing at all. Otherwise the prompt carries the rendered HTML
    and ``activate()``, which hands the required plan token to ``on_upgrade``.
    """
    if not evaluate(query).needs_upgrade:
        return None
    options = options or PromptOptions()
    plan = get_plan(query.required_plan)
    html = env.get_template("partials/upgrade_prompt.html").render(
        plan=plan,
        feature_label=query.feature_label,
        monthly=is_monthly(plan.tier),
        style_class=options.style_class,
        action_url=options.action_url,
        csrf_token=options.csrf_token,
    )
    return UpgradePrompt(query=query, html=Markup(html), on_upgrade=on_upgrade)


def render_plan_badge(tier, style_class: str = "") -> Markup:
    plan = get_plan(tier)
    html = env.get_template("partials/plan_badge.html").render(plan=plan, style_class=style_class)
    return Markup(html)
