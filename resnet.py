"""
ResNet Architecture Builder with PyTorch
========================================

Assembles ResNet-18, ResNet-34, ResNet-50, ResNet-101 and ResNet-152 networks
from a version number and an input geometry.

Features:
- Static version table driving a sequential stem -> 4 stages -> head build
- Explicit shape bookkeeping threaded through every block (``FeatureShape``)
- Optional classification head and ImageNet pretrained weights
- Weight archives keyed by a fixed model name
"""

from collections import OrderedDict
from dataclasses import dataclass, asdict
from typing import Optional, List, Dict, Any, Tuple
import logging
import os

import torch
import torch.nn as nn
from torch import Tensor
from torchvision.models import get_weight

from config import (
    BlockKind, ConfigurationError, ModelConfig, StageConfig, IMAGENET_CLASSES,
)


logger = logging.getLogger(__name__)

#: Name under which the network weights are stored in an archive.
MODEL_NAME = 'ResNet'

Pair = Tuple[int, int]


def conv_out_size(size: int, kernel: int, stride: int, padding: int) -> int:
    """Return the convolution (or pooling) output size along one axis.

    Raises ``ConfigurationError`` when the input is too small to produce at
    least one output element.
    """
    if stride < 1:
        raise ConfigurationError(f"Stride must be positive, got {stride}")
    out = (size - kernel + 2 * padding) // stride + 1
    if out < 1:
        raise ConfigurationError(
            f"Input size {size} is too small for kernel {kernel}, stride {stride}, padding {padding}"
        )
    return out


@dataclass(frozen=True)
class FeatureShape:
    """Channels-first shape of a feature map while the network is assembled"""
    channels: int
    height: int
    width: int

    def after_conv(self, out_channels: int, kernel: Pair = (3, 3), stride: Pair = (1, 1),
                   padding: Pair = (1, 1)) -> 'FeatureShape':
        # Pairs are (width, height).
        return FeatureShape(
            channels=out_channels,
            height=conv_out_size(self.height, kernel[1], stride[1], padding[1]),
            width=conv_out_size(self.width, kernel[0], stride[0], padding[0]),
        )

    def as_tuple(self) -> Tuple[int, int, int]:
        return (self.channels, self.height, self.width)

    def __str__(self) -> str:
        return f"({self.channels}, {self.height}, {self.width})"


def convolution_block(
    shape: FeatureShape,
    out_channels: int,
    kernel: Pair = (3, 3),
    stride: Pair = (1, 1),
    padding: Pair = (1, 1),
    groups: int = 1,
) -> Tuple[nn.Conv2d, nn.BatchNorm2d, FeatureShape]:
    """Create a convolution followed by batch normalization.

    Args:
        shape: Shape of the feature map entering the convolution.
        out_channels: Number of output maps.
        kernel: Filter size as (width, height).
        stride: Stride as (width, height).
        padding: Padding on each side as (width, height).
        groups: Number of blocked connections from input to output channels.

    Returns:
        The convolution, the normalization layer and the shape they produce.
    """
    out_shape = shape.after_conv(out_channels, kernel, stride, padding)
    # Conv2d takes (height, width) pairs.
    conv = nn.Conv2d(shape.channels, out_channels, kernel_size=(kernel[1], kernel[0]),
                     stride=(stride[1], stride[0]), padding=(padding[1], padding[0]),
                     groups=groups, bias=False)
    norm = nn.BatchNorm2d(out_channels, eps=1e-5)
    logger.debug(f"Convolution: {shape} ---> {out_shape}")
    logger.debug(f"BatchNorm: ({out_channels}) ---> ({out_channels})")
    return conv, norm, out_shape


def _shortcut(shape: FeatureShape, out_channels: int, stride: Pair,
              downsample: bool) -> Tuple[Optional[nn.Sequential], FeatureShape]:
    """Projection from the block input, or None for an identity pass-through"""
    if not downsample:
        logger.debug("IdentityLayer")
        return None, shape
    logger.debug("DownSample (")
    conv, norm, out_shape = convolution_block(shape, out_channels, kernel=(1, 1),
                                              stride=stride, padding=(0, 0))
    logger.debug(")")
    return nn.Sequential(conv, norm), out_shape


def _check_merge(main: FeatureShape, shortcut: FeatureShape) -> None:
    if main != shortcut:
        raise ConfigurationError(
            f"Residual merge needs matching shapes, got {main} and {shortcut}; "
            f"a downsample projection is required"
        )


class BasicBlock(nn.Module):
    """Basic ResNet block for ResNet-18 and ResNet-34"""

    expansion: int = BlockKind.BASIC.expansion

    def __init__(
        self,
        in_shape: FeatureShape,
        out_channels: int,
        stride: Pair = (1, 1),
        downsample: bool = False,
    ) -> None:
        super().__init__()

        # The projection reads the pre-block shape, so it is built before the main path advances.
        downsample_layer, shortcut_shape = _shortcut(
            in_shape, out_channels * self.expansion, stride, downsample)

        self.conv1, self.bn1, shape = convolution_block(in_shape, out_channels, stride=stride)
        self.relu = nn.ReLU(inplace=True)
        logger.debug("Relu")
        self.conv2, self.bn2, shape = convolution_block(shape, out_channels * self.expansion)
        self.downsample = downsample_layer

        _check_merge(shape, shortcut_shape)
        logger.debug("Relu")
        self.in_shape = in_shape
        self.out_shape = shape

    def forward(self, x: Tensor) -> Tensor:
        identity = x

        out = self.conv1(x)
        out = self.bn1(out)
        out = self.relu(out)

        out = self.conv2(out)
        out = self.bn2(out)

        if self.downsample is not None:
            identity = self.downsample(x)

        out += identity
        out = self.relu(out)

        return out


class Bottleneck(nn.Module):
    """Bottleneck ResNet block for ResNet-50, ResNet-101, ResNet-152"""

    expansion: int = BlockKind.BOTTLENECK.expansion

    def __init__(
        self,
        in_shape: FeatureShape,
        out_channels: int,
        stride: Pair = (1, 1),
        downsample: bool = False,
        base_width: int = 64,
        groups: int = 1,
    ) -> None:
        super().__init__()

        # Truncates like an integer cast; pretrained channel counts depend on it.
        width = int((base_width / 64.0) * out_channels) * groups
        if width < 1:
            raise ConfigurationError(
                f"Bottleneck width is zero for base_width={base_width}, out_channels={out_channels}"
            )

        downsample_layer, shortcut_shape = _shortcut(
            in_shape, out_channels * self.expansion, stride, downsample)

        self.conv1, self.bn1, shape = convolution_block(in_shape, width, kernel=(1, 1),
                                                        padding=(0, 0))
        logger.debug("Relu")
        self.conv2, self.bn2, shape = convolution_block(shape, width, stride=stride, groups=groups)
        logger.debug("Relu")
        self.conv3, self.bn3, shape = convolution_block(shape, out_channels * self.expansion,
                                                        kernel=(1, 1), padding=(0, 0))
        self.relu = nn.ReLU(inplace=True)
        self.downsample = downsample_layer

        _check_merge(shape, shortcut_shape)
        logger.debug("Relu")
        self.width = width
        self.in_shape = in_shape
        self.out_shape = shape

    def forward(self, x: Tensor) -> Tensor:
        identity = x

        out = self.conv1(x)
        out = self.bn1(out)
        out = self.relu(out)

        out = self.conv2(out)
        out = self.bn2(out)
        out = self.relu(out)

        out = self.conv3(out)
        out = self.bn3(out)

        if self.downsample is not None:
            identity = self.downsample(x)

        out += identity
        out = self.relu(out)

        return out


class ResNetBuilder:
    """Sequential construction pass: stem -> four stages -> optional head.

    Every step takes the current ``FeatureShape`` and returns the layers it
    created together with the shape they produce, so no dimension state is
    carried between calls.
    """

    def __init__(self, config: ModelConfig) -> None:
        config.validate()
        self.config = config
        self.architecture = config.architecture

    def stem(self, shape: FeatureShape) -> Tuple[List[Tuple[str, nn.Module]], List[Tuple[str, FeatureShape]]]:
        conv, norm, shape = convolution_block(shape, 64, kernel=(7, 7), stride=(2, 2), padding=(3, 3))
        trace = [('conv1', shape)]
        logger.debug("Relu")
        pooled = shape.after_conv(shape.channels, kernel=(3, 3), stride=(2, 2), padding=(1, 1))
        logger.debug(f"MaxPooling: {shape} ---> {pooled}")
        trace.append(('maxpool', pooled))
        layers = [
            ('conv1', conv),
            ('bn1', norm),
            ('relu', nn.ReLU(inplace=True)),
            ('maxpool', nn.MaxPool2d(kernel_size=3, stride=2, padding=1)),
        ]
        return layers, trace

    def make_block(self, block: BlockKind, shape: FeatureShape, out_channels: int,
                   stride: int = 1, downsample: bool = False) -> nn.Module:
        if block is BlockKind.BASIC:
            return BasicBlock(shape, out_channels, (stride, stride), downsample)
        return Bottleneck(shape, out_channels, (stride, stride), downsample,
                          base_width=self.config.base_width, groups=self.config.groups)

    def make_layer(self, shape: FeatureShape, stage: StageConfig) -> Tuple[nn.Sequential, FeatureShape]:
        """Build one stage; only its first block may stride or project"""
        downsample = (stage.stride != 1
                      or shape.channels != stage.out_channels * stage.block.expansion)

        blocks = [self.make_block(stage.block, shape, stage.out_channels, stage.stride, downsample)]
        shape = blocks[0].out_shape
        for _ in range(1, stage.num_blocks):
            blocks.append(self.make_block(stage.block, shape, stage.out_channels))
            shape = blocks[-1].out_shape

        return nn.Sequential(*blocks), shape

    def head(self, shape: FeatureShape) -> Tuple[List[Tuple[str, nn.Module]], FeatureShape]:
        num_classes = self.config.output_classes
        logger.debug(f"AdaptiveMeanPooling: {shape} ---> ({shape.channels}, 1, 1)")
        logger.debug(f"Linear: ({shape.channels}) ---> ({num_classes})")
        layers = [
            ('avgpool', nn.AdaptiveAvgPool2d((1, 1))),
            ('flatten', nn.Flatten(1)),
            ('fc', nn.Linear(shape.channels, num_classes)),
        ]
        return layers, FeatureShape(num_classes, 1, 1)

    def build(self) -> Tuple['OrderedDict[str, nn.Module]', List[Tuple[str, FeatureShape]]]:
        """Return the ordered layers of the network and the shape after each step"""
        config = self.config
        shape = FeatureShape(config.input_channels, config.input_height, config.input_width)

        layers, trace = self.stem(shape)
        shape = trace[-1][1]

        for index, stage in enumerate(self.architecture.stages(), start=1):
            name = f'layer{index}'
            stage_layer, shape = self.make_layer(shape, stage)
            layers.append((name, stage_layer))
            trace.append((name, shape))

        if config.include_top:
            head_layers, shape = self.head(shape)
            layers.extend(head_layers)
            trace.append(('fc', shape))

        return OrderedDict(layers), trace


class ResNet(nn.Sequential):
    """ResNet forward network assembled from a version number.

    Child modules carry the same names as torchvision's ResNets, so their
    state dicts are interchangeable.
    """

    def __init__(
        self,
        version: int = 18,
        input_channels: int = 3,
        input_width: int = 224,
        input_height: int = 224,
        include_top: bool = True,
        pretrained: bool = False,
        num_classes: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        config = ModelConfig(
            version=version,
            input_channels=input_channels,
            input_width=input_width,
            input_height=input_height,
            include_top=include_top,
            pretrained=pretrained,
            num_classes=num_classes,
            **kwargs,
        )
        layers, trace = ResNetBuilder(config).build()
        super().__init__(layers)

        self.config = config
        self.shape_trace = trace
        self._initialize_weights()

        input_shape = FeatureShape(config.input_channels, config.input_height, config.input_width)
        logger.info(f"Built ResNet-{config.version}: {input_shape} ---> {self.output_shape}")

        if config.pretrained:
            self.load_pretrained(config.pretrained_path)

    @classmethod
    def from_config(cls, config: ModelConfig) -> 'ResNet':
        return cls(**asdict(config))

    @classmethod
    def from_input_shape(cls, input_shape: Tuple[int, int, int], version: int = 18,
                         **kwargs: Any) -> 'ResNet':
        """Build from a channels-first (channels, height, width) tuple"""
        channels, height, width = input_shape
        return cls(version, channels, width, height, **kwargs)

    @classmethod
    def from_checkpoint(cls, path: str, map_location: Optional[str] = 'cpu') -> 'ResNet':
        """Rebuild a network from the configuration stored in an archive and load its weights"""
        archive = _read_archive(path, map_location)
        if 'config' not in archive:
            raise KeyError(f"Archive {path} does not store a model configuration")
        model_config = dict(archive['config'])
        # The archive already holds the trained weights.
        model_config.update(pretrained=False, pretrained_path=None)
        model = cls(**model_config)
        model._load_archive(archive, path)
        return model

    def __getitem__(self, idx):
        # Slices are plain Sequentials; a ResNet is only built from a version.
        if isinstance(idx, slice):
            return nn.Sequential(OrderedDict(list(self._modules.items())[idx]))
        return super().__getitem__(idx)

    def __add__(self, other: nn.Sequential) -> nn.Sequential:
        if not isinstance(other, nn.Sequential):
            return NotImplemented
        return nn.Sequential(*self, *other)

    @property
    def output_shape(self) -> FeatureShape:
        return self.shape_trace[-1][1]

    @property
    def stage_shapes(self) -> Dict[str, FeatureShape]:
        return dict(self.shape_trace)

    def _initialize_weights(self) -> None:
        for m in self.modules():
            if isinstance(m, nn.Conv2d):
                nn.init.kaiming_normal_(m.weight, mode='fan_out', nonlinearity='relu')
            elif isinstance(m, (nn.BatchNorm2d, nn.GroupNorm)):
                nn.init.constant_(m.weight, 1)
                nn.init.constant_(m.bias, 0)

        # Zero-initialize the last BN in each residual branch,
        # so that the residual branch starts with zeros, and each residual block behaves like an identity.
        # This improves the model by 0.2~0.3% according to https://arxiv.org/abs/1706.02677
        if self.config.zero_init_residual:
            for m in self.modules():
                if isinstance(m, Bottleneck):
                    nn.init.constant_(m.bn3.weight, 0)  # type: ignore[arg-type]
                elif isinstance(m, BasicBlock):
                    nn.init.constant_(m.bn2.weight, 0)  # type: ignore[arg-type]

    def save_model(self, path: str) -> None:
        """Save the weights under ``MODEL_NAME`` together with the model configuration"""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        torch.save({MODEL_NAME: self.state_dict(), 'config': asdict(self.config)}, path)
        logger.info(f"Saved {MODEL_NAME} weights to {path}")

    def load_model(self, path: str, map_location: Optional[str] = 'cpu') -> None:
        """Load weights stored under ``MODEL_NAME`` in the archive at ``path``"""
        self._load_archive(_read_archive(path, map_location), path)

    def _load_archive(self, archive: Dict[str, Any], path: str) -> None:
        if MODEL_NAME not in archive:
            raise KeyError(f"Archive {path} has no entry named '{MODEL_NAME}'")
        self.load_state_dict(archive[MODEL_NAME])
        logger.info(f"Loaded {MODEL_NAME} weights from {path}")

    def load_pretrained(self, path: Optional[str] = None, progress: bool = True) -> None:
        """Load ImageNet weights, from ``path`` when given or from torchvision otherwise"""
        if not self.config.include_top or self.config.output_classes != IMAGENET_CLASSES:
            raise ConfigurationError("Pretrained weights need the 1000-class classification head")

        if path is not None:
            self.load_model(path)
            return

        weights = get_weight(f"ResNet{self.config.version}_Weights.IMAGENET1K_V1")
        self.load_state_dict(weights.get_state_dict(progress=progress))
        logger.info(f"Loaded ImageNet weights for ResNet-{self.config.version}")


def _read_archive(path: str, map_location: Optional[str]) -> Dict[str, Any]:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Model archive not found: {path}")
    return torch.load(path, map_location=map_location)


def resnet18(num_classes: Optional[int] = None, **kwargs: Any) -> ResNet:
    """ResNet-18 model"""
    return ResNet(18, num_classes=num_classes, **kwargs)


def resnet34(num_classes: Optional[int] = None, **kwargs: Any) -> ResNet:
    """ResNet-34 model"""
    return ResNet(34, num_classes=num_classes, **kwargs)


def resnet50(num_classes: Optional[int] = None, **kwargs: Any) -> ResNet:
    """ResNet-50 model"""
    return ResNet(50, num_classes=num_classes, **kwargs)


def resnet101(num_classes: Optional[int] = None, **kwargs: Any) -> ResNet:
    """ResNet-101 model"""
    return ResNet(101, num_classes=num_classes, **kwargs)


def resnet152(num_classes: Optional[int] = None, **kwargs: Any) -> ResNet:
    """ResNet-152 model"""
    return ResNet(152, num_classes=num_classes, **kwargs)


# Model registry for easy access
MODEL_REGISTRY = {
    'resnet18': resnet18,
    'resnet34': resnet34,
    'resnet50': resnet50,
    'resnet101': resnet101,
    'resnet152': resnet152,
}


def create_model(model_name: str, **kwargs: Any) -> ResNet:
    """Create a ResNet model by name"""
    if model_name not in MODEL_REGISTRY:
        raise ConfigurationError(
            f"Model {model_name} not found. Available models: {list(MODEL_REGISTRY.keys())}"
        )

    return MODEL_REGISTRY[model_name](**kwargs)
