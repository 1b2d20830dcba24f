"""stratapkgs: stage graphs built on strata."""

from stratapkgs.build import Builder
from stratapkgs.stage import Stage, stage
from stratapkgs.stage_set import StageSet

__all__ = ["Builder", "Stage", "stage", "StageSet"]
