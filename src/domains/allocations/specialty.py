"""Course category normalization against trainer specialty tags."""
import re

# Canonical trainer specialty tags
APP_MAKING = "App Making"
VIDEO_MAKING = "Video Making"
CODING = "Coding"
AI = "AI"
ROBOTICS = "Robotics"

AI_ALIASES = frozenset(
    {
        "ai",
        "a.i.",
        "artificial intelligence",
        "artifical intelligence",
        "artifical intellegence",
        "artificial intellegence",
    }
)

_CS_WORD = re.compile(r"\bcs\b")


def normalize_specialty(value: str | None) -> str | None:
    """Map a free-form course category to a canonical specialty tag.

    Unknown categories are returned stripped, so an exact match against a
    trainer's specialty list can still succeed.
    """
    if not value:
        return None
    raw = value.strip()
    if not raw:
        return None
    text = raw.lower()

    if "app" in text and ("making" in text or "development" in text):
        return APP_MAKING
    if "video" in text and ("making" in text or "editing" in text):
        return VIDEO_MAKING
    if (
        "coding" in text
        or "programming" in text
        or "computer science" in text
        or _CS_WORD.search(text)
    ):
        return CODING
    if text in AI_ALIASES or any(alias in text for alias in AI_ALIASES if len(alias) > 3):
        return AI
    if "robotic" in text:
        return ROBOTICS
    return raw


def course_specialties(category: str | None, subcategory: str | None) -> tuple[str | None, str | None]:
    """Normalized (category, subcategory). A subcategory equal to the category is dropped."""
    primary = normalize_specialty(category)
    secondary = normalize_specialty(subcategory)
    if secondary is not None and secondary == primary:
        secondary = None
    return primary, secondary


def specialty_match_rank(
    trainer_specialties: list[str] | None,
    category: str | None,
    subcategory: str | None,
) -> int | None:
    """1 for a category match, 2 for subcategory only, None when neither matches.

    Trainer tags are normalized too, so a trainer listing "Artificial
    Intelligence" matches an "AI" course.
    """
    if not trainer_specialties:
        return None
    tags = {normalize_specialty(tag) for tag in trainer_specialties}
    tags.discard(None)
    if category is not None and category in tags:
        return 1
    if subcategory is not None and subcategory in tags:
        return 2
    return None
