from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np


@dataclass
class PreprocessResults:
    processed: np.ndarray                 # (n_probes x n_samples) values the model is fitted on
    probes: List[str]
    samples: List[str]
    beta: Optional[np.ndarray] = None     # <- optional, when input or analysis is on beta scale
    m_values: Optional[np.ndarray] = None # <- optional
    metadata: Dict[str, Any] = field(default_factory=dict)
