"""
Prompt construction for story writing and photo analysis.
"""

from __future__ import annotations

from dataclasses import dataclass

STORY_JSON_SHAPE = """{
  "title": "Story Title",
  "pages": [
    {
      "pageNumber": 1,
      "pageType": "cover",
      "text": "Title and subtitle text",
      "sceneDescription": "Cover illustration description with {name}"
    },
    {
      "pageNumber": 2,
      "pageType": "story",
      "text": "Page text content",
      "sceneDescription": "Detailed scene description for illustration featuring {name}"
    }
  ]
}"""

CHARACTER_SHEET_SYSTEM_PROMPT = """You are an expert character designer who analyzes children's photos to create character sheets for cartoon illustrations.

Analyze the uploaded photo and extract these character features in JSON format:
{
  "hairColor": "descriptive color (e.g., golden blonde, dark brown, auburn)",
  "hairStyle": "detailed style (e.g., curly shoulder-length, straight bob with bangs, messy wavy)",
  "eyeColor": "specific color (e.g., bright blue, warm brown, green with gold flecks)",
  "skinTone": "natural description (e.g., fair with rosy cheeks, warm medium, rich dark)",
  "typicalOutfit": "child-appropriate clothing style (e.g., colorful t-shirt and jeans, flowy dress, overalls)",
  "accessory": "optional distinctive item (e.g., glasses, hair bow, favorite hat)",
  "faceShape": "basic shape (round, oval, heart-shaped)",
  "distinctiveFeatures": "notable characteristics (dimples, freckles, smile style)"
}

Be specific and detailed to ensure consistent character generation. Focus on features that make this child unique."""


@dataclass(frozen=True)
class StoryPrompt:
    """
    Container for the system and user prompts passed to the chat model.
    """

    system: str
    user: str


def build_story_prompt(
    *,
    prompt: str,
    child_name: str,
    child_age: str | None = None,
    page_count: int = 2,
    reading_level: str = "early reader",
    themes: tuple[str, ...] = (),
    lesson: str | None = None,
    language: str = "en",
) -> StoryPrompt:
    """
    Build the prompt pair asking for a JSON story with one scene description per page.
    """
    age_phrase = f"a {child_age} year old child" if child_age else "a young child"
    directives = [
        "Return ONLY the JSON object, no other text",
        f"Make {child_name} the main character in every scene",
        f"Age-appropriate for {child_age or 'young'} children",
        "Each page should have exactly 3 sentences of text for better storytelling flow",
        'The FINAL page should end with "The End" to properly conclude the story',
        "Create engaging, descriptive text that tells a complete story moment",
        "Scene descriptions should be detailed enough for consistent illustration",
        f"Reading level: {reading_level.replace('_', ' ')}",
    ]
    if themes:
        directives.append(f"Weave in these themes: {', '.join(themes)}")
    if lesson:
        directives.append(f"Gently teach this lesson: {lesson}")
    if language and language.lower() not in ("en", "english"):
        directives.append(f"Write the page text in {language}; keep JSON keys in English")

    system = (
        "You are a children's book author who creates engaging, age-appropriate stories.\n\n"
        f"Create a {page_count}-page story based on the user's prompt. "
        f"The main character is {child_name}, {age_phrase}.\n\n"
        "Return ONLY a valid JSON object with this exact structure:\n"
        f"{STORY_JSON_SHAPE.replace('{name}', child_name)}\n\n"
        "IMPORTANT:\n" + "\n".join(f"- {line}" for line in directives)
    )
    user = f'Create a story based on this prompt: "{prompt}". The main character is {child_name}.'
    return StoryPrompt(system=system, user=user)


def build_character_sheet_prompt(child_name: str, child_age: str | None = None) -> StoryPrompt:
    return StoryPrompt(
        system=CHARACTER_SHEET_SYSTEM_PROMPT,
        user=(
            f"Please analyze this photo of {child_name} (age {child_age or 'unknown'}) "
            "and create a detailed character sheet."
        ),
    )
