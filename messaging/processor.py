"""
Response Processor - AI Answer Formatting for Telegram

Turns a raw AI answer into the content the message sender delivers: the
image references it contains and the cleaned, Telegram-formatted text.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import utils.text_processor as text_processor
from utils.text_processor import MarkupValidation

log = logging.getLogger(__name__)

DEFAULT_COMPLETION_MESSAGE = "✅ Done!"


@dataclass
class ProcessedResponse:
    """Answer ready for delivery."""
    text: str
    image_urls: List[str] = field(default_factory=list)
    has_images: bool = False
    use_markdown: bool = False


class ResponseProcessor:
    """
    Processes AI answers for Telegram.

    Example:
        processor = ResponseProcessor()
        processed = processor.process("Look ![menu](https://x.com/menu.png)")
        # processed.image_urls == ["https://x.com/menu.png"]
        # processed.text == "Look"
    """

    def __init__(
        self,
        completion_message: str = DEFAULT_COMPLETION_MESSAGE,
        section_headers: Optional[Dict[str, str]] = None
    ):
        """
        Initialize the response processor.

        Args:
            completion_message: Text used when the answer has neither text nor images
            section_headers: Optional header keyword → icon decoration
        """
        self.completion_message = completion_message
        self.section_headers = section_headers or {}

    def extract_images(self, raw_answer: str):
        """
        Pull image references out of the answer.

        Returns:
            Tuple of (clean_text, image_urls)
        """
        if not raw_answer:
            return '', []

        image_urls = text_processor.extract_markdown_images(raw_answer)
        without_markdown = text_processor.remove_markdown_images(raw_answer)

        image_urls.extend(text_processor.extract_image_urls(without_markdown))
        clean_text = text_processor.remove_image_urls(without_markdown)

        return text_processor.collapse_newlines(clean_text), text_processor.dedupe(image_urls)

    def process(self, raw_answer: Optional[str]) -> ProcessedResponse:
        """
        Process an AI answer.

        Args:
            raw_answer: Answer text returned by the backend

        Returns:
            ProcessedResponse: cleaned text, images and markup mode
        """
        if not raw_answer or not isinstance(raw_answer, str):
            return ProcessedResponse(text=self.completion_message)

        clean_text, image_urls = self.extract_images(raw_answer)
        log.debug(f"Found {len(image_urls)} images, clean text length {len(clean_text)}")

        if clean_text:
            formatted = text_processor.format_for_telegram(clean_text, self.section_headers)
            if formatted:
                return ProcessedResponse(
                    text=formatted,
                    image_urls=image_urls,
                    has_images=bool(image_urls),
                    use_markdown=True
                )

        if image_urls:
            # Image-only answer, no caption to mis-render
            return ProcessedResponse(text='', image_urls=image_urls, has_images=True, use_markdown=False)

        return ProcessedResponse(text=self.completion_message)

    @staticmethod
    def validate_markup(text: Optional[str]) -> MarkupValidation:
        """Repair unbalanced markup; see text_processor.validate_markdown()."""
        return text_processor.validate_markdown(text)
