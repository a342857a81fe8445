from .board_spec import BoardSpec, DEFAULT_BOARD_SPEC
from .config import (
	DetectionConfig,
	DEFAULT_CONFIG,
	HIGH_RECALL_CONFIG,
	build_detection_config,
	create_detection_config,
)
from .types import CalibrationOutput, CalibrationSettings, DetectionResult

# detector / pipeline 依赖 viz 与 utils.report，需显式导入子模块

__all__ = [
	"BoardSpec",
	"CalibrationOutput",
	"CalibrationSettings",
	"DEFAULT_BOARD_SPEC",
	"DEFAULT_CONFIG",
	"DetectionConfig",
	"DetectionResult",
	"HIGH_RECALL_CONFIG",
	"build_detection_config",
	"create_detection_config",
]
