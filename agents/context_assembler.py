"""
Context Assembler: picks style-reference neighbours and the identity anchor.

Pure selection over already-loaded data; calling assemble() twice on the
same inputs returns the same selection.
"""

from typing import List, Optional, Sequence, Tuple, Union

from schemas import Dossier, Frame, Sketch, StyleContext
from utils.logger import get_logger

logger = get_logger("context_assembler")

Target = Union[Frame, Sketch]

LEFT_FIRST = "left_first"
RIGHT_FIRST = "right_first"


class ContextAssembler:
    """
    스타일 참조 프레임 + 아이덴티티 앵커 선택기

    - target in the sequence: nearest usable neighbour on each side, then
      extend outward (side chosen by `policy`) until max_style_references
    - target not in the sequence: the last max_style_references usable frames
    - identity anchor: explicit known dossier, else registry lookup on source_hash
    """

    def __init__(self, registry=None, policy: str = LEFT_FIRST, max_style_references: int = 2):
        """
        Args:
            registry: DossierRegistry used for identity-anchor lookup
            policy: "left_first" or "right_first"; which side gets extra references
            max_style_references: upper bound on style references
        """
        if policy not in (LEFT_FIRST, RIGHT_FIRST):
            raise ValueError(f"Unknown extension policy: {policy}")
        if max_style_references < 0:
            raise ValueError("max_style_references must be >= 0")
        self.registry = registry
        self.policy = policy
        self.max_style_references = max_style_references

    def assemble(
        self,
        target: Target,
        frames: Sequence[Frame],
        known_dossier: Optional[Dossier] = None,
    ) -> StyleContext:
        style_refs = self.select_style_references(target, frames)
        anchor = self.resolve_identity_anchor(target, known_dossier)

        logger.debug(
            f"[Context] target={target.id} refs={[f.id for f in style_refs]} "
            f"anchor={anchor.role_label if anchor else None}"
        )
        return StyleContext(style_references=style_refs, identity_anchor=anchor)

    def select_style_references(self, target: Target, frames: Sequence[Frame]) -> List[Frame]:
        limit = self.max_style_references
        if limit == 0 or not frames:
            return []

        index = next((i for i, f in enumerate(frames) if f.id == target.id), -1)

        if index < 0:
            usable = [f for f in frames if f.has_image]
            return usable[-limit:]

        left = [(i, frames[i]) for i in range(index - 1, -1, -1) if frames[i].has_image]
        right = [(i, frames[i]) for i in range(index + 1, len(frames)) if frames[i].has_image]

        selected: List[Tuple[int, Frame]] = []
        # immediate neighbours first
        if left:
            selected.append(left.pop(0))
        if right and len(selected) < limit:
            selected.append(right.pop(0))
        selected = selected[:limit]

        while len(selected) < limit and (left or right):
            selected.append(self._next_extension(left, right))

        selected.sort(key=lambda pair: pair[0])
        return [frame for _, frame in selected]

    def _next_extension(self, left: list, right: list) -> Tuple[int, Frame]:
        if self.policy == LEFT_FIRST:
            return left.pop(0) if left else right.pop(0)
        return right.pop(0) if right else left.pop(0)

    def resolve_identity_anchor(self, target: Target, known_dossier: Optional[Dossier] = None) -> Optional[Dossier]:
        if known_dossier is not None:
            return known_dossier
        if self.registry is None:
            return None
        return self.registry.lookup(getattr(target, "source_hash", None))
