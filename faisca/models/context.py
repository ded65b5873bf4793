from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from faisca.schema import FrictionlessSchema


@dataclass
class PipelineContext:
    checkpoints: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    schema: Optional[FrictionlessSchema] = None
    # position of the transform currently being applied, for error messages
    op_index: Optional[int] = None
