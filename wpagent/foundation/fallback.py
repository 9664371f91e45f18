"""
Fallback responder - deterministic, keyword-driven replies.

Used whenever the generative service cannot be reached or its output is
unusable. Rules are evaluated top to bottom and the first match wins;
the last rule matches anything. Keywords cover English and Spanish input.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from wpagent.foundation.errors import ErrorKind

logger = logging.getLogger(__name__)

Predicate = Callable[[str], bool]


@dataclass(frozen=True)
class ErrorContext:
    """Why the fallback is being used."""
    kind: str
    message: str = ""
    caller_supplied: bool = False


@dataclass(frozen=True)
class CannedResponse:
    """A reply produced without the generative service."""
    explanation: str
    command: Optional[str] = None
    is_safe: bool = True
    agent_thought: str = ""
    rule: str = ""

    @property
    def is_conversational(self) -> bool:
        return self.command is None


@dataclass(frozen=True)
class FallbackRule:
    name: str
    predicate: Predicate
    template: CannedResponse


# =============================================================================
# Predicates
# =============================================================================

def any_of(*words: str) -> Predicate:
    return lambda text: any(w in text for w in words)


def all_of(*predicates: Predicate) -> Predicate:
    return lambda text: all(p(text) for p in predicates)


def always(text: str) -> bool:
    return True


_CODE_REQUEST = any_of("code", "código", "codigo", "give me", "dame", "generate", "genera")
_CREATE = any_of("create", "crea", "make a", "new ")
_PAGE = any_of("page", "página", "pagina")
_POST = any_of("post", "entrada")
_UPDATE = any_of("update", "actualizar", "actualiza", "upgrade")
_ALL = any_of("all", "todos", "todas")
_THEME = any_of("theme", "tema")


# =============================================================================
# Rule table (order is the tie-break)
# =============================================================================

HOME_PAGE_CONTENT = (
    '<!-- wp:heading {"level":1} --><h1>Welcome to our site!</h1><!-- /wp:heading -->'
    '<!-- wp:paragraph --><p>Discover the services we built for you.</p><!-- /wp:paragraph -->'
    '<!-- wp:columns --><div class="wp-block-columns">'
    '<!-- wp:column --><div class="wp-block-column"><!-- wp:heading {"level":3} --><h3>Premium Service</h3><!-- /wp:heading -->'
    '<!-- wp:paragraph --><p>High quality solutions with personal attention.</p><!-- /wp:paragraph --></div><!-- /wp:column -->'
    '<!-- wp:column --><div class="wp-block-column"><!-- wp:heading {"level":3} --><h3>24/7 Support</h3><!-- /wp:heading -->'
    '<!-- wp:paragraph --><p>Our team is available around the clock.</p><!-- /wp:paragraph --></div><!-- /wp:column -->'
    '</div><!-- /wp:columns -->'
)
PAGE_CONTENT = (
    '<!-- wp:heading {"level":1} --><h1>New Page</h1><!-- /wp:heading -->'
    '<!-- wp:paragraph --><p>Page created automatically. Edit it from the WordPress dashboard.</p><!-- /wp:paragraph -->'
)
POST_CONTENT = (
    '<!-- wp:heading {"level":2} --><h2>New Post</h2><!-- /wp:heading -->'
    '<!-- wp:paragraph --><p>Post created automatically with WordPress blocks.</p><!-- /wp:paragraph -->'
)

CSS_EXAMPLE = """```css
.main-navigation {
    background-color: #2c3e50;
}
.main-navigation a:hover {
    color: #3498db;
}
```"""

JS_EXAMPLE = """```javascript
document.querySelectorAll('a[href^="#"]').forEach(anchor => {
    anchor.addEventListener('click', event => {
        event.preventDefault();
        document.querySelector(anchor.getAttribute('href')).scrollIntoView({ behavior: 'smooth' });
    });
});
```"""


DEFAULT_RULES: Tuple[FallbackRule, ...] = (
    FallbackRule(
        "greeting",
        any_of("hello", " hi ", " hey ", "hola", "buenos días", "buenas tardes", "buenas noches", "good morning"),
        CannedResponse(
            explanation="Hello! I'm WP-Agent, your WordPress assistant. I can manage your site, "
                        "create content, write CSS/JavaScript and answer WordPress questions{note}. "
                        "How can I help you today?",
            agent_thought="Greeting detected",
        ),
    ),
    FallbackRule(
        "how_are_you",
        any_of("how are you", "¿cómo estás", "como estas", "cómo estás", "qué tal", "que tal"),
        CannedResponse(
            explanation="Doing well, thanks for asking! I'm ready to help with your WordPress site{note}. "
                        "What do you need?",
            agent_thought="Status question",
        ),
    ),
    FallbackRule(
        "capabilities",
        any_of("what can you do", "qué puedes hacer", "que puedes hacer", "ayuda", "help"),
        CannedResponse(
            explanation="I can:\n"
                        "- Manage WordPress: plugins, themes, users and content\n"
                        "- Write code: CSS, JavaScript, PHP and HTML\n"
                        "- Create pages and posts with Gutenberg blocks\n"
                        "- Optimise: database cleanup, cache, performance\n"
                        "- Explain concepts and answer technical questions\n\n"
                        "Try \"List all plugins\" or \"Give me CSS for the menu\"{note}.",
            agent_thought="Capabilities request",
        ),
    ),
    FallbackRule(
        "css_code",
        all_of(any_of("css"), _CODE_REQUEST),
        CannedResponse(
            explanation="Here is a starting point for custom CSS:\n\n" + CSS_EXAMPLE +
                        "\n\nTell me which element you want to style{note}.",
            agent_thought="CSS code request",
        ),
    ),
    FallbackRule(
        "javascript_code",
        all_of(any_of("javascript", " js"), _CODE_REQUEST),
        CannedResponse(
            explanation="Here is a JavaScript example (smooth scrolling):\n\n" + JS_EXAMPLE +
                        "\n\nTell me what behaviour you need{note}.",
            agent_thought="JavaScript code request",
        ),
    ),
    FallbackRule(
        "thanks",
        any_of("thank", "gracias", "perfect", "perfecto", "excelente", "excellent", "genial"),
        CannedResponse(
            explanation="You're welcome! I'm here whenever you need help with your site{note}.",
            agent_thought="Thanks",
        ),
    ),
    FallbackRule(
        "create_home_page",
        all_of(_CREATE, _PAGE, any_of("home", "inicio"), any_of("column", "columna"), any_of("service", "servicio")),
        CannedResponse(
            explanation="Creating a home page with a greeting and two service columns using blocks{note}.",
            command="wp post create --post_type=page --post_title=\"Home\" "
                    f"--post_content='{HOME_PAGE_CONTENT}' --post_status=publish",
            agent_thought="Home page with block layout",
        ),
    ),
    FallbackRule(
        "create_page",
        all_of(_CREATE, _PAGE),
        CannedResponse(
            explanation="Creating a new draft page with WordPress blocks{note}.",
            command="wp post create --post_type=page --post_title=\"New Page\" "
                    f"--post_content='{PAGE_CONTENT}' --post_status=draft",
            agent_thought="Basic page with blocks",
        ),
    ),
    FallbackRule(
        "create_post",
        all_of(_CREATE, _POST),
        CannedResponse(
            explanation="Creating a new draft post with WordPress blocks{note}.",
            command=f"wp post create --post_title=\"New Post\" --post_content='{POST_CONTENT}' --post_status=draft",
            agent_thought="Basic post with blocks",
        ),
    ),
    FallbackRule(
        "slow_site",
        any_of("slow", "lento", "performance", "rendimiento"),
        CannedResponse(
            explanation="Performance problem detected. Active plugins are the most common cause of a slow site, "
                        "so let's review them first{note}.",
            command="wp plugin list --status=active",
            agent_thought="Performance issue, review active plugins",
        ),
    ),
    FallbackRule(
        "error_500",
        any_of("error 500", "500 error", "internal server error", "error interno"),
        CannedResponse(
            explanation="Error 500 detected. It is usually caused by a faulty plugin, so let's list the active "
                        "plugins{note}.",
            command="wp plugin list --status=active",
            agent_thought="500 errors usually point to a plugin",
        ),
    ),
    FallbackRule(
        "login_problem",
        any_of("login", "log in", "acceso", "entrar", "access"),
        CannedResponse(
            explanation="Access problem detected. Let's check the administrator accounts{note}.",
            command="wp user list --role=administrator",
            agent_thought="Access problem, check administrators",
        ),
    ),
    FallbackRule(
        "update_all_plugins",
        all_of(_UPDATE, any_of("plugin"), _ALL),
        CannedResponse(
            explanation="Updating every plugin that has an update available{note}.",
            command="wp plugin update --all",
            is_safe=False,
            agent_thought="Bulk plugin update",
        ),
    ),
    FallbackRule(
        "update_plugins",
        all_of(_UPDATE, any_of("plugin")),
        CannedResponse(
            explanation="Listing plugins so you can choose which ones to update{note}.",
            command="wp plugin list",
            agent_thought="Selective plugin update",
        ),
    ),
    FallbackRule(
        "update_all_themes",
        all_of(_UPDATE, _THEME, _ALL),
        CannedResponse(
            explanation="Updating every theme that has an update available{note}.",
            command="wp theme update --all",
            is_safe=False,
            agent_thought="Bulk theme update",
        ),
    ),
    FallbackRule(
        "update_themes",
        all_of(_UPDATE, _THEME),
        CannedResponse(
            explanation="Listing themes so you can choose which ones to update{note}.",
            command="wp theme list",
            agent_thought="Selective theme update",
        ),
    ),
    FallbackRule(
        "plugins",
        any_of("plugin"),
        CannedResponse(
            explanation="Listing every installed plugin with its status and version{note}.",
            command="wp plugin list",
            agent_thought="Plugin request",
        ),
    ),
    FallbackRule(
        "users",
        any_of("user", "usuario"),
        CannedResponse(
            explanation="Listing the registered users{note}.",
            command="wp user list",
            agent_thought="User request",
        ),
    ),
    FallbackRule(
        "default",
        always,
        CannedResponse(
            explanation="I couldn't identify the specific request. Showing basic system information to start "
                        "the diagnosis{note}.",
            command="wp --version",
            agent_thought="Generic diagnostic",
        ),
    ),
)


# =============================================================================
# Notes
# =============================================================================

QUOTA_NOTE_USER = " (your API key has reached its limit; wait for it to reset)"
QUOTA_NOTE_SHARED = " (the shared service quota is exhausted; wait or add your own API key)"
UNAVAILABLE_NOTE = " (fallback system active: the generative service is unavailable)"
DEFAULT_NOTE = " (fallback system active)"


def degradation_note(error: Optional[ErrorContext]) -> str:
    """Annotation telling the user why the fallback answered."""
    if error is None:
        return DEFAULT_NOTE
    if error.kind == ErrorKind.UPSTREAM_QUOTA:
        return QUOTA_NOTE_USER if error.caller_supplied else QUOTA_NOTE_SHARED
    return UNAVAILABLE_NOTE


class FallbackResponder:
    """
    Evaluates the rule table against the lower-cased input.

    Pure apart from logging: the same input and error context always
    produce the same response.
    """

    def __init__(self, rules: Optional[Tuple[FallbackRule, ...]] = None):
        self.rules: Tuple[FallbackRule, ...] = tuple(rules) if rules is not None else DEFAULT_RULES
        if not self.rules:
            raise ValueError("Fallback rule table must not be empty")

    def match(self, user_input: str) -> FallbackRule:
        text = f" {user_input.lower().strip()} "
        for rule in self.rules:
            if rule.predicate(text):
                return rule
        # A table without a catch-all still needs an answer.
        return self.rules[-1]

    def respond(self, user_input: str, error: Optional[ErrorContext] = None) -> CannedResponse:
        rule = self.match(user_input)
        note = degradation_note(error)
        template = rule.template

        explanation = template.explanation.replace("{note}", note)
        if rule.name == "default" and error is not None and error.message:
            explanation = f"{error.message.rstrip('.')}. {explanation}"

        thought = template.agent_thought
        if error is not None and error.kind == ErrorKind.UPSTREAM_QUOTA:
            thought = f"Generative service reachable but quota exhausted; {thought.lower()}"
        else:
            thought = f"Fallback system: {thought.lower()}"

        logger.info(f"Fallback rule '{rule.name}' matched")
        return replace(template, explanation=explanation, agent_thought=thought, rule=rule.name)
