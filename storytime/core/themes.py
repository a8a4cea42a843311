"""
StoryTime — Theme configuration and prompt building.

Each theme (FANTASY, GENZ, MEME) carries its tone, vocabulary, emojis,
personas, a worked example and a fallback template used when an event
has no storyline at notification time.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from storytime.data.models import Theme
from storytime.ports.story_port import StoryContext


@dataclass(frozen=True)
class ThemeConfig:
    theme: Theme
    description: str
    tone: str
    keywords: tuple[str, ...]
    emojis: tuple[str, ...]
    personas: tuple[str, ...]
    example: str
    fallback_template: str


THEMES: dict[Theme, ThemeConfig] = {
    Theme.FANTASY: ThemeConfig(
        theme=Theme.FANTASY,
        description=(
            "Epic fantasy adventures with rich medieval storytelling, "
            "magical elements, and heroic narratives"
        ),
        tone=(
            "Epic, noble, magical and immersive with rich medieval fantasy "
            "language that makes mundane events feel like legendary adventures"
        ),
        keywords=(
            "fellowship", "council of legends", "sacred quest", "legendary battle",
            "mystical alliance", "ancient guild", "enchanted realm", "mystical tavern",
            "ancient prophecy", "chosen champion", "wise sage", "blade of destiny",
        ),
        emojis=("⚔️", "🏰", "🛡️", "👑", "🧙", "📜", "🗡️", "🏹", "✨", "🔮", "🐉", "🦄"),
        personas=(
            "Noble Adventurer", "Master of Time", "Champion of the Realm",
            "Hero of Seven Kingdoms", "Legendary Champion",
        ),
        example=(
            "👑 Hail, Noble Champion! At the 3rd hour past midday, you shall lead "
            "the Ancient Council of Treasury Guardians in their sacred quest! Your "
            "wisdom and valor are needed as the fellowship gathers to divine the "
            "mystical allocation of golden coffers."
        ),
        fallback_template='{emoji} The fellowship gathers for "{title}" at {time}. A quest awaits!',
    ),
    Theme.GENZ: ThemeConfig(
        theme=Theme.GENZ,
        description=(
            "Ultra-modern Gen Z energy with authentic slang, social media vibes, "
            "and relatable cultural references"
        ),
        tone=(
            "Authentic Gen Z energy with internet culture, trending slang, and "
            "social media references that make events feel like the main character moment"
        ),
        keywords=(
            "bestie", "no cap", "fr fr", "periodt", "main character energy",
            "understood the assignment", "living rent free", "its giving",
            "chef kiss", "hits different", "say less", "big mood",
        ),
        emojis=("💯", "💸", "🔥", "✨", "💅", "👑", "💕", "🙌", "😭", "💀", "🤌", "👀"),
        personas=(
            "Main Character", "Icon", "Bestie", "Legend", "Absolute Unit",
            "Supreme Being",
        ),
        example=(
            "💀 Bestie, you're about to absolutely SLAY this 3PM budget meeting! "
            "POV: You walking into that room like the main character you are, "
            'ready to serve financial wisdom 🔥 This is giving "I understood the '
            'assignment" energy and we are HERE for it!'
        ),
        fallback_template='{emoji} "{title}" at {time} bestie! Time to slay, no cap!',
    ),
    Theme.MEME: ThemeConfig(
        theme=Theme.MEME,
        description=(
            "Peak internet culture with viral meme references, relatable chaos, "
            "and perfectly-timed internet humor"
        ),
        tone=(
            "Peak internet humor with viral meme references, relatable anxiety, "
            "and that perfect chaotic energy that makes everything hilariously relatable"
        ),
        keywords=(
            "this is fine meme energy", "*narrator voice*", "plot twist nobody asked for",
            "side quest activated", "achievement unlocked", "loading screen of life",
            "error 404 motivation not found", "buffering life choices",
            "i am once again asking", "stonks only go up", "uno reverse card",
            "no thoughts head empty",
        ),
        emojis=("🔥", "😅", "💀", "🤡", "👀", "🙃", "😬", "🎭", "🚨", "🤯", "🥲", "🗿"),
        personas=(
            "Fellow Human", "Chosen One", "Based Individual", "Legendary Being",
            "Ultimate Protagonist", "Meme Master",
        ),
        example=(
            "🔥 Chosen One, your 3PM budget meeting awaits... this is fine, "
            "everything is fine 🔥 *narrator voice: Our hero was absolutely NOT "
            "prepared for this level of financial reality* Achievement unlocked: "
            "Adult Responsibilities Boss Battle! 💀"
        ),
        fallback_template='{emoji} "{title}" at {time}... this is fine, everything is fine {emoji}',
    ),
}

RESPONSE_FORMAT = (
    "Return JSON only:\n"
    '{"story_text": "Address the user with their persona. Themed story, 2-3 sentences", '
    '"emoji": "😀", "plain_text": "Professional version"}'
)


def get_theme(theme: Theme | str) -> ThemeConfig:
    return THEMES[Theme(theme)]


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def format_time(instant: datetime, timezone_name: str = "UTC") -> str:
    """Short local clock time, e.g. '3:00 PM'."""
    local = instant.astimezone(_zone(timezone_name))
    return local.strftime("%I:%M %p").lstrip("0")


def format_event_time(start: datetime, end: datetime, timezone_name: str = "UTC") -> str:
    """'Mon, Jan 6, 3:00 PM - 4:00 PM' in the user's timezone."""
    tz = _zone(timezone_name)
    local_start = start.astimezone(tz)
    day = f"{local_start.strftime('%a, %b')} {local_start.day}"
    return f"{day}, {format_time(start, timezone_name)} - {format_time(end, timezone_name)}"


def build_prompt(context: StoryContext, rng: random.Random | None = None) -> str:
    """Render the generation prompt for one event."""
    cfg = get_theme(context.theme)
    rng = rng or random
    persona = rng.choice(cfg.personas)

    details = format_event_time(context.start_time, context.end_time, context.timezone)
    if context.attendee_count:
        details += f", {context.attendee_count} people"
    if context.location:
        details += f", {context.location}"

    lines = [
        f'Transform "{context.event_title}" ({details}) into a {cfg.theme.value} '
        "story starring the user.",
        "",
        f'USER: Address as "{persona}" - make them the main character',
        f"STYLE: {' '.join(cfg.tone.split()[:8])}",
        f"KEYWORDS: {', '.join(cfg.keywords[:8])}",
        f"EMOJIS: {' '.join(cfg.emojis[:6])}",
        f"LANGUAGE: write for locale {context.locale}",
    ]
    if context.event_description:
        lines.append(f"DETAILS: {context.event_description[:300]}")

    lines += [
        "",
        "RULES:",
        "1. Make USER the hero/protagonist of this event",
        "2. Use a theme-specific greeting for personal connection",
        "3. Transform event details into story elements",
        "4. Keep critical info (time/location) recognizable but themed",
        "5. 2-3 sentences, a complete adventure with the user as star",
    ]

    if context.previous_stories:
        lines += ["", "PREVIOUSLY (keep continuity, do not repeat):"]
        for prior in context.previous_stories:
            lines.append(f'- {prior.event_title}: "{prior.story_text}"')

    lines += ["", f'EXAMPLE: "{cfg.example}"', "", RESPONSE_FORMAT]
    return "\n".join(lines)


def fallback_message(
    theme: Theme | str,
    title: str,
    start: datetime,
    timezone_name: str = "UTC",
    rng: random.Random | None = None,
) -> tuple[str, str]:
    """Return (emoji, story text) from the theme's fallback template."""
    cfg = get_theme(theme)
    emoji = (rng or random).choice(cfg.emojis)
    text = cfg.fallback_template.format(
        emoji=emoji, title=title, time=format_time(start, timezone_name),
    )
    return emoji, text
