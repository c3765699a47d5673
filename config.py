"""
Configuration Management System
==============================

Configuration for ResNet construction: the static version table that drives
the builder, model/logging configuration dataclasses with validation, and
YAML/JSON persistence of configurations.
"""

import os
import yaml
import json
import argparse
from enum import Enum
from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, asdict
import logging


logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when a network cannot be built from the given configuration"""


class BlockKind(Enum):
    """Residual unit used by a ResNet version"""
    BASIC = 'basicblock'
    BOTTLENECK = 'bottleneck'

    @property
    def expansion(self) -> int:
        return 1 if self is BlockKind.BASIC else 4


@dataclass(frozen=True)
class StageConfig:
    """One stage of residual blocks"""
    block: BlockKind
    out_channels: int
    num_blocks: int
    stride: int


STAGE_CHANNELS: Tuple[int, int, int, int] = (64, 128, 256, 512)
STAGE_STRIDES: Tuple[int, int, int, int] = (1, 2, 2, 2)


@dataclass(frozen=True)
class ArchitectureConfig:
    """Block kind and per-stage block counts of a ResNet version"""
    block: BlockKind
    blocks: Tuple[int, int, int, int]

    def stages(self) -> List[StageConfig]:
        return [
            StageConfig(self.block, channels, num_blocks, stride)
            for channels, num_blocks, stride in zip(STAGE_CHANNELS, self.blocks, STAGE_STRIDES)
        ]


RESNET_CONFIGS: Dict[int, ArchitectureConfig] = {
    18: ArchitectureConfig(BlockKind.BASIC, (2, 2, 2, 2)),
    34: ArchitectureConfig(BlockKind.BASIC, (3, 4, 6, 3)),
    50: ArchitectureConfig(BlockKind.BOTTLENECK, (3, 4, 6, 3)),
    101: ArchitectureConfig(BlockKind.BOTTLENECK, (3, 4, 23, 3)),
    152: ArchitectureConfig(BlockKind.BOTTLENECK, (3, 8, 36, 3)),
}

SUPPORTED_VERSIONS: Tuple[int, ...] = tuple(sorted(RESNET_CONFIGS))

IMAGENET_CLASSES: int = 1000


def get_architecture(version: int) -> ArchitectureConfig:
    """Look up the block configuration for a ResNet version"""
    if version not in RESNET_CONFIGS:
        raise ConfigurationError(
            f"Unsupported ResNet version: {version}. Valid options: {list(SUPPORTED_VERSIONS)}"
        )
    return RESNET_CONFIGS[version]


@dataclass
class ModelConfig:
    """Model configuration parameters"""
    version: int = 18
    input_channels: int = 3
    input_width: int = 224
    input_height: int = 224
    include_top: bool = True
    pretrained: bool = False
    num_classes: Optional[int] = None
    pretrained_path: Optional[str] = None
    base_width: int = 64
    groups: int = 1
    zero_init_residual: bool = False

    @property
    def architecture(self) -> ArchitectureConfig:
        return get_architecture(self.version)

    @property
    def output_classes(self) -> Optional[int]:
        """Width of the classification head, None when the head is excluded"""
        if not self.include_top:
            return None
        return IMAGENET_CLASSES if self.num_classes is None else self.num_classes

    def validate(self):
        """Validate model parameters before any layer is built"""
        architecture = get_architecture(self.version)

        for name in ('input_channels', 'input_width', 'input_height'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        if self.base_width < 1 or self.groups < 1:
            raise ConfigurationError(
                f"base_width and groups must be positive, got {self.base_width} and {self.groups}"
            )
        if architecture.block is BlockKind.BASIC and (self.base_width != 64 or self.groups != 1):
            raise ConfigurationError("BasicBlock only supports groups=1 and base_width=64")

        if self.num_classes is not None:
            if not self.include_top:
                raise ConfigurationError("num_classes can only be given when include_top is True")
            if self.num_classes < 1:
                raise ConfigurationError(f"num_classes must be positive, got {self.num_classes}")

        if self.pretrained:
            if not self.include_top:
                raise ConfigurationError("include_top must be True when pretrained is True")
            if self.output_classes != IMAGENET_CLASSES:
                raise ConfigurationError(
                    f"Pretrained weights have {IMAGENET_CLASSES} classes, got num_classes={self.num_classes}"
                )
            if self.input_channels != 3:
                raise ConfigurationError(
                    f"Pretrained weights expect 3 input channels, got {self.input_channels}"
                )
            if self.base_width != 64 or self.groups != 1:
                raise ConfigurationError("Pretrained weights require base_width=64 and groups=1")


@dataclass
class LoggingConfig:
    """Logging configuration"""
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    log_dir: str = './logs'
    use_tensorboard: bool = False


@dataclass
class Config:
    """Main configuration class"""
    model: ModelConfig
    logging: LoggingConfig

    def __post_init__(self):
        """Post-initialization validation"""
        self.validate()

    def validate(self):
        """Validate configuration parameters"""
        self.model.validate()

        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if self.logging.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"Invalid log level: {self.logging.log_level}. Valid options: {valid_log_levels}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return asdict(self)

    def save(self, path: str):
        """Save configuration to file"""
        config_dict = self.to_dict()

        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        if path.endswith('.yaml') or path.endswith('.yml'):
            with open(path, 'w') as f:
                yaml.dump(config_dict, f, default_flow_style=False, indent=2)
        elif path.endswith('.json'):
            with open(path, 'w') as f:
                json.dump(config_dict, f, indent=2)
        else:
            raise ValueError("Unsupported file format. Use .yaml, .yml, or .json")

    @classmethod
    def load(cls, path: str) -> 'Config':
        """Load configuration from file"""
        if not os.path.exists(path):
            raise FileNotFoundError(f"Configuration file not found: {path}")

        if path.endswith('.yaml') or path.endswith('.yml'):
            with open(path, 'r') as f:
                config_dict = yaml.safe_load(f)
        elif path.endswith('.json'):
            with open(path, 'r') as f:
                config_dict = json.load(f)
        else:
            raise ValueError("Unsupported file format. Use .yaml, .yml, or .json")

        return cls.from_dict(config_dict or {})

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'Config':
        """Create configuration from dictionary"""
        return cls(
            model=ModelConfig(**config_dict.get('model', {})),
            logging=LoggingConfig(**config_dict.get('logging', {}))
        )

    def update(self, updates: Dict[str, Any]):
        """Update configuration with new values and re-validate"""
        for section, values in updates.items():
            if hasattr(self, section):
                section_obj = getattr(self, section)
                for key, value in values.items():
                    if hasattr(section_obj, key):
                        setattr(section_obj, key, value)
                    else:
                        logger.warning(f"Unknown parameter: {section}.{key}")
            else:
                logger.warning(f"Unknown section: {section}")
        self.validate()
def build_arg_parser(parents: Optional[List[argparse.ArgumentParser]] = None,
                     description: str = 'ResNet Construction Configuration') -> argparse.ArgumentParser:
    """Argument parser for the configuration options, extended by ``parents``"""
    parser = argparse.ArgumentParser(description=description, parents=parents or [])

    # Model arguments
    parser.add_argument('--version', type=int, default=18,
                        choices=list(SUPPORTED_VERSIONS),
                        help='ResNet version')
    parser.add_argument('--input-shape', type=int, nargs=3, default=[3, 224, 224],
                        metavar=('CHANNELS', 'HEIGHT', 'WIDTH'),
                        help='Channels-first input shape')
    parser.add_argument('--num-classes', type=int, default=None,
                        help='Number of output classes (requires the classification head)')
    parser.add_argument('--no-top', action='store_true',
                        help='Exclude the classification head')
    parser.add_argument('--pretrained', action='store_true',
                        help='Load ImageNet weights')
    parser.add_argument('--pretrained-path', type=str, default=None,
                        help='Weights archive to load instead of downloading')

    # Logging arguments
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level')
    parser.add_argument('--log-dir', type=str, default='./logs',
                        help='Directory for model logs')

    # Configuration file
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration file')

    return parser


def config_from_namespace(args: argparse.Namespace) -> Config:
    """Create configuration from parsed arguments"""
    if args.config:
        return Config.load(args.config)

    channels, height, width = args.input_shape
    return Config(
        model=ModelConfig(
            version=args.version,
            input_channels=channels,
            input_width=width,
            input_height=height,
            include_top=not args.no_top,
            pretrained=args.pretrained,
            num_classes=args.num_classes,
            pretrained_path=args.pretrained_path
        ),
        logging=LoggingConfig(
            log_level=args.log_level,
            log_dir=args.log_dir
        )
    )


def create_config_from_args(argv: Optional[List[str]] = None) -> Config:
    """Create configuration from command line arguments"""
    return config_from_namespace(build_arg_parser().parse_args(argv))
