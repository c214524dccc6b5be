"""Interactive controls attached to generated-image messages.

Layouts are immutable: every transform returns a new ControlLayout and
leaves its input untouched. Controls are located through an identifier
index built once per layout.

Control identifiers are colon-delimited tokens::

    {kind}:{acting_user_id}:{source_job_id}:{image_index}
    rate:{acting_user_id}:{source_job_id}:{image_index}:{rating_value}
"""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field, replace

from models.jobs import GenerationJob
from models.schemas import ActionKind, ControlSchema, ControlStyle, FollowUpKind

# Number of images per generation, one follow-up control each
FOLLOW_UP_SLOTS = 4

_SEPARATOR = ":"


class MalformedControlId(ValueError):
    """Raised when a control identifier cannot be parsed."""


@dataclass(frozen=True)
class RatingOption:
    """One entry of the rating vocabulary."""

    glyph: str
    value: str


RATE_ACTIONS: tuple[RatingOption, ...] = (
    RatingOption(glyph="😍", value="love"),
    RatingOption(glyph="🙂", value="like"),
    RatingOption(glyph="🙁", value="dislike"),
    RatingOption(glyph="😡", value="hate"),
)


def rating_for_glyph(
    glyph: str | None,
    options: Iterable[RatingOption] = RATE_ACTIONS,
) -> RatingOption | None:
    """Find the rating option shown with the given glyph."""
    if glyph is None:
        return None
    return next((option for option in options if option.glyph == glyph), None)


@dataclass(frozen=True)
class Control:
    """A single button-like control.

    Attributes:
        id: Identifier encoding the follow-up it triggers.
        label: Short text shown on the control.
        style: Emphasis style.
        disabled: Whether the control can still be pressed.
        glyph: Optional emoji shown on the control.
    """

    id: str
    label: str | None = None
    style: ControlStyle = ControlStyle.SECONDARY
    disabled: bool = False
    glyph: str | None = None

    def activated(self) -> "Control":
        return replace(self, style=ControlStyle.PRIMARY, disabled=True)


@dataclass(frozen=True)
class ControlLayout:
    """Ordered rows of controls with an identifier index."""

    rows: tuple[tuple[Control, ...], ...] = ()
    _index: dict[str, tuple[int, int]] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        index: dict[str, tuple[int, int]] = {}
        for r, row in enumerate(self.rows):
            for c, control in enumerate(row):
                index.setdefault(control.id, (r, c))
        object.__setattr__(self, "_index", index)

    @classmethod
    def from_rows(cls, rows: Iterable[Iterable[Control]]) -> "ControlLayout":
        return cls(rows=tuple(tuple(row) for row in rows))

    def find(self, control_id: str) -> Control | None:
        position = self._index.get(control_id)
        if position is None:
            return None
        r, c = position
        return self.rows[r][c]

    def replace_control(self, control_id: str, control: Control) -> "ControlLayout":
        """Return a copy with one control swapped; unknown ids return self."""
        position = self._index.get(control_id)
        if position is None:
            return self
        r, c = position
        row = self.rows[r]
        new_row = (*row[:c], control, *row[c + 1:])
        return ControlLayout(rows=(*self.rows[:r], new_row, *self.rows[r + 1:]))

    def controls(self) -> Iterator[Control]:
        for row in self.rows:
            yield from row

    def __len__(self) -> int:
        return len(self.rows)


def activate_control(control_id: str, layout: ControlLayout) -> ControlLayout:
    """Emphasize and disable one control.

    Args:
        control_id: Identifier of the pressed control.
        layout: The full current layout.

    Returns:
        A new layout with the control activated, or the input layout if no
        control has that identifier (or it is already activated).
    """
    control = layout.find(control_id)
    if control is None:
        return layout

    activated = control.activated()
    if activated == control:
        return layout
    return layout.replace_control(control_id, activated)


# -----------------------------------------------------------------------------
# Identifier codec
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class FollowUpRequest:
    """A parsed control identifier.

    Attributes:
        kind: Which follow-up to run.
        user_id: The user the controls were created for.
        source_job_id: The job the follow-up refers to.
        image_index: Which image of the source job.
        rating: Rating value token (rate controls only).
    """

    kind: FollowUpKind
    user_id: str
    source_job_id: str
    image_index: int
    rating: str | None = None


def encode_control_id(
    kind: FollowUpKind,
    user_id: str,
    job_id: str,
    image_index: int,
    rating: str | None = None,
) -> str:
    """Build a control identifier from its tokens."""
    tokens = [kind.value, user_id, job_id, str(image_index)]
    if rating is not None:
        tokens.append(rating)
    for token in tokens:
        if not token or _SEPARATOR in token:
            raise ValueError(f"Invalid control identifier token: {token!r}")
    return _SEPARATOR.join(tokens)


def parse_control_id(identifier: str) -> FollowUpRequest:
    """Parse a control identifier into a FollowUpRequest.

    Raises:
        MalformedControlId: On a wrong token count, unknown kind, empty
            tokens or an invalid image index.
    """
    tokens = identifier.split(_SEPARATOR)
    if len(tokens) not in (4, 5):
        raise MalformedControlId(f"Expected 4 or 5 tokens, got {len(tokens)}: {identifier!r}")

    raw_kind, user_id, job_id, raw_index, *rest = tokens
    try:
        kind = FollowUpKind(raw_kind)
    except ValueError:
        raise MalformedControlId(f"Unknown follow-up kind {raw_kind!r}") from None

    if not user_id or not job_id:
        raise MalformedControlId(f"Empty user or job token: {identifier!r}")

    if not raw_index.isdigit():
        raise MalformedControlId(f"Image index is not a number: {raw_index!r}")
    image_index = int(raw_index)

    if kind != FollowUpKind.RATE:
        if rest:
            raise MalformedControlId(f"Unexpected rating token for {kind.value}")
        if image_index >= FOLLOW_UP_SLOTS:
            raise MalformedControlId(f"Image index out of range: {image_index}")
        return FollowUpRequest(kind, user_id, job_id, image_index)

    rating = rest[0] if rest else None
    if rating == "":
        raise MalformedControlId(f"Empty rating token: {identifier!r}")
    return FollowUpRequest(kind, user_id, job_id, image_index, rating)


# -----------------------------------------------------------------------------
# Toolbars
# -----------------------------------------------------------------------------


def _build_slot_row(kind: FollowUpKind, user_id: str, job_id: str) -> tuple[Control, ...]:
    return tuple(
        Control(
            id=encode_control_id(kind, user_id, job_id, slot),
            label=f"{kind.value[0].upper()}{slot + 1}",
        )
        for slot in range(FOLLOW_UP_SLOTS)
    )


def _build_rating_row(
    user_id: str,
    job: GenerationJob,
    rating_options: Iterable[RatingOption],
) -> tuple[Control, ...]:
    image_index = job.image_index or 0
    return tuple(
        Control(
            id=encode_control_id(FollowUpKind.RATE, user_id, job.id, image_index, option.value),
            glyph=option.glyph,
        )
        for option in rating_options
    )


def build_follow_up_controls(
    job: GenerationJob,
    acting_user_id: str,
    rating_options: Iterable[RatingOption] = RATE_ACTIONS,
) -> ControlLayout:
    """Build the toolbar shown under a finished job.

    Upscaled images get a single rating row. Everything else gets a
    variation row followed by an upscale row.

    Args:
        job: The terminal job the controls refer to.
        acting_user_id: The user the controls are created for.
        rating_options: The rating vocabulary.

    Returns:
        The new control layout.
    """
    if job.action == ActionKind.UPSCALE:
        return ControlLayout.from_rows([_build_rating_row(acting_user_id, job, rating_options)])

    return ControlLayout.from_rows([
        _build_slot_row(FollowUpKind.VARIATION, acting_user_id, job.id),
        _build_slot_row(FollowUpKind.UPSCALE, acting_user_id, job.id),
    ])


# -----------------------------------------------------------------------------
# API conversion
# -----------------------------------------------------------------------------


def layout_to_schema(layout: ControlLayout) -> list[list[ControlSchema]]:
    return [
        [
            ControlSchema(
                id=control.id,
                label=control.label,
                style=control.style,
                disabled=control.disabled,
                glyph=control.glyph,
            )
            for control in row
        ]
        for row in layout.rows
    ]


def layout_from_schema(rows: Iterable[Iterable[ControlSchema]]) -> ControlLayout:
    return ControlLayout.from_rows(
        [
            Control(
                id=control.id,
                label=control.label,
                style=control.style,
                disabled=control.disabled,
                glyph=control.glyph,
            )
            for control in row
        ]
        for row in rows
    )
