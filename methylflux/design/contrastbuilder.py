from typing import Sequence, Tuple, Union

import numpy as np

from methylflux.design.designmatrixbuilder import DesignSpecification


class ContrastBuilder:
    def __init__(self, design: DesignSpecification):
        """
        Parameters:
        - design: DesignSpecification the fit was made with
        """
        self.design = design
        self.column_names = list(design.column_names)
        self.levels = design.levels

    def _unit(self, idx: int) -> np.ndarray:
        vec = np.zeros(len(self.column_names))
        vec[idx] = 1.0
        return vec

    def _level_column(self, covariate: str, level: str):
        """Index of the indicator column of a level, None for the reference level."""
        for i, name in enumerate(self.column_names):
            if name in (f"{covariate}[T.{level}]", f"{covariate}[{level}]"):
                return i
        return None

    def _contrast_vector(self, group1: str, group2: str) -> Tuple[np.ndarray, str]:
        """
        Create contrast vector for group1 - group2
        """
        for covariate, levels in self.levels.items():
            if group1 in levels and group2 in levels:
                vec = np.zeros(len(self.column_names))
                i1 = self._level_column(covariate, group1)
                i2 = self._level_column(covariate, group2)
                if i1 is None and i2 is None:
                    break
                if i1 is not None:
                    vec[i1] = 1
                if i2 is not None:
                    vec[i2] = -1
                return vec, f"{group1}_vs_{group2}"
        raise ValueError(
            f"Cannot build contrast {group1}_vs_{group2}: levels must belong to the same "
            f"categorical covariate {self.levels}"
        )

    def resolve(self, target: Union[int, str, Sequence[float]]) -> Tuple[np.ndarray, str]:
        """
        Turn a target into (contrast vector, label).

        Accepted targets: a design column index or name, a level comparison
        "A_vs_B" (or "A_v_B"), or an explicit contrast vector.
        """
        if isinstance(target, (int, np.integer)):
            idx = self.design.column_index(int(target))
            return self._unit(idx), self.column_names[idx]

        if isinstance(target, str):
            if target in self.column_names:
                idx = self.column_names.index(target)
                return self._unit(idx), target
            for sep in ("_vs_", "_v_"):
                if sep in target:
                    a, b = target.split(sep, 1)
                    return self._contrast_vector(a.strip(), b.strip())
            # raises KeyError listing the columns
            self.design.column_index(target)

        vec = np.asarray(target, dtype=np.float64)
        if vec.shape != (len(self.column_names),):
            raise ValueError(f"Contrast vector has shape {vec.shape}; expected ({len(self.column_names)},)")
        if not np.any(vec):
            raise ValueError("Contrast vector is all zero.")
        label = " + ".join(f"{w:g}*{n}" for w, n in zip(vec, self.column_names) if w != 0)
        return vec, label
