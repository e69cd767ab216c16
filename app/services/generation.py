"""Shopify section code generation through the Anthropic Messages API."""

import base64
import re
from dataclasses import dataclass

import anthropic

from app.core.config import Settings, get_settings
from app.core.exceptions import BadRequestError, GenerationError, GenerationTimeoutError
from app.core.logging import get_logger

log = get_logger(__name__)

SECTION_TYPES = (
    "product",
    "slider",
    "banner",
    "collection",
    "announcement",
    "header",
    "footer",
    "image-with-text",
    "multicolumn",
    "custom",
)
MAX_SECTION_TYPE_LENGTH = 100
NO_IMAGES_TEXT = "No reference images provided."

IMAGE_MEDIA_TYPES = ("image/png", "image/jpeg", "image/gif", "image/webp")

PROMPT_TEMPLATE = """You are ShopifyExpert, an AI specialised in writing flawless Shopify Liquid sections. Generate the complete code for a {section_type} section.

REFERENCE IMAGES:
{image_descriptions}

SECTION REQUIREMENTS:
{requirements}

## SCHEMA RULES
- Range settings need at least 3 steps, (max - min) evenly divisible by step, and a default divisible by step
- Color settings need hex defaults such as #FFFFFF
- No circular references in the schema
- Always include background_color, padding_top and padding_bottom settings
- Decide deliberately between section settings and block settings

## CLASS NAMING (BEM)
- Block: {css_block}
- Element: {css_block}__element
- Modifier: {css_block}__element--modifier
- Never use generic class names such as container, wrapper or button
- Put data-section-id="{{{{ section.id }}}}" on the root element and namespace JavaScript with the section id

## RESPONSIVE DESIGN
- Mobile-first CSS with breakpoints at 749px, 989px and 1199px
- Responsive schema settings for mobile adjustments

## ASSETS
- Check that assets exist before rendering them
- Use srcset/sizes, lazy loading and explicit width/height on images
- Use Shopify's built-in image and video placeholders
- Images: <img src="{{{{ section.settings.image | img_url: 'master' }}}}" alt="{{{{ section.settings.image_alt | escape }}}}" loading="lazy">

## SLIDERS (ONLY WHEN NEEDED)
- Load the library from a CDN defensively and initialise it per section.id
- Expose enable_slider, autoplay, autoplay_speed, show_arrows, show_dots and infinite_loop settings

Use Lorem Ipsum for text content and comment the code.

Structure the response exactly like this:

<html>
<!-- HTML for the section -->
</html>
<!-- CDN links to add to theme.liquid, if any -->
<script>
// JavaScript for the section, if any
</script>

<style>
/* CSS for the section */
</style>

{{% schema %}}
{{
  // JSON schema for the section
}}
{{% endschema %}}"""


@dataclass
class ReferenceImage:
    data: bytes
    media_type: str


def section_slug(section_type: str) -> str:
    slug = re.sub(r"\s+", "-", section_type.strip().lower())
    return slug or "custom"


def normalize_section_type(section_type: str | None) -> str:
    value = (section_type or "").strip()
    if not value:
        raise BadRequestError("Section type is required")
    if len(value) > MAX_SECTION_TYPE_LENGTH:
        raise BadRequestError(f"Section type must be at most {MAX_SECTION_TYPE_LENGTH} characters")
    return value


def build_prompt(section_type: str, requirements: str = "", image_descriptions: str = "") -> str:
    return PROMPT_TEMPLATE.format(
        section_type=section_type,
        image_descriptions=image_descriptions.strip() or NO_IMAGES_TEXT,
        requirements=requirements.strip(),
        css_block=f"section-{section_slug(section_type)}",
    )


def validate_reference_image(data: bytes, content_type: str | None, settings: Settings | None = None) -> ReferenceImage:
    s = settings or get_settings()
    if not data:
        raise BadRequestError("Reference image is empty")
    if len(data) > s.max_reference_image_bytes:
        raise BadRequestError(
            "Reference image is too large",
            details={"max_bytes": s.max_reference_image_bytes},
        )
    media_type = (content_type or "").split(";")[0].strip().lower()
    if media_type == "image/jpg":
        media_type = "image/jpeg"
    if media_type not in IMAGE_MEDIA_TYPES:
        raise BadRequestError("Unsupported image type; use PNG, JPEG, GIF or WEBP")
    return ReferenceImage(data=data, media_type=media_type)


class SectionGenerator:
    """Thin wrapper over AsyncAnthropic; one request per generation, no retries."""

    def __init__(self, client: anthropic.AsyncAnthropic | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.client = client or anthropic.AsyncAnthropic(
            api_key=self.settings.anthropic_api_key or None,
            timeout=self.settings.generation_timeout,
            max_retries=0,
        )

    def _messages(self, prompt: str, image: ReferenceImage | None) -> list[dict]:
        if image is None:
            return [{"role": "user", "content": prompt}]
        return [
            {
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": image.media_type,
                            "data": base64.b64encode(image.data).decode("ascii"),
                        },
                    },
                    {"type": "text", "text": prompt},
                ],
            }
        ]

    async def generate(
        self,
        section_type: str,
        requirements: str = "",
        image_descriptions: str = "",
        image: ReferenceImage | None = None,
    ) -> str:
        prompt = build_prompt(section_type, requirements, image_descriptions)
        log.info("generation_start", section_type=section_type, has_image=image is not None)
        try:
            resp = await self.client.messages.create(
                model=self.settings.anthropic_model,
                max_tokens=self.settings.generation_max_tokens,
                messages=self._messages(prompt, image),
            )
        except anthropic.APITimeoutError as e:
            log.warning("generation_timeout", timeout=self.settings.generation_timeout)
            raise GenerationTimeoutError() from e
        except anthropic.APIStatusError as e:
            log.warning("generation_api_error", status_code=e.status_code, error=str(e)[:200])
            raise GenerationError(f"Error calling the code generation API: {e.status_code}") from e
        except anthropic.APIError as e:
            log.warning("generation_api_error", error=str(e)[:200])
            raise GenerationError() from e

        text = "".join(
            block.text for block in (resp.content or []) if getattr(block, "type", None) == "text"
        )
        if not text.strip():
            raise GenerationError("Invalid response format from the code generation API")
        log.info("generation_done", section_type=section_type, chars=len(text))
        return text
