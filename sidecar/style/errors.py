"""Exceptions raised by the style-learning pipeline."""


class StyleError(Exception):
    """Base class for style-learning failures."""


class StyleAnalysisError(StyleError):
    """The analysis collaborator failed or returned an unusable answer."""


class InsufficientEditsError(StyleError):
    """Too few eligible edits for an unforced analysis run."""

    def __init__(self, edit_count: int, required: int) -> None:
        self.edit_count = edit_count
        self.required = required
        super().__init__(
            f"Insufficient edits for analysis: {edit_count} available, {required} required"
        )
