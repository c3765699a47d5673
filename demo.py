"""
ResNet Construction Demo Script
===============================

Builds a ResNet from command line arguments or a configuration file and shows:
- The shape after the stem, every stage and the head
- Parameter counts
- A dummy forward pass
- Saving the weights archive
"""

import sys
import argparse
from typing import List, Optional

import torch

from config import Config, SUPPORTED_VERSIONS, build_arg_parser, config_from_namespace
from logger import setup_logging, setup_model_logging
from resnet import ResNet, create_model, MODEL_REGISTRY


def demo_model_creation(input_shape=(3, 224, 224), num_classes: Optional[int] = 10):
    """Build every registered version and run a forward pass, without the head when num_classes is None"""
    print("🧠 Demo: Model Creation and Testing")
    print("=" * 50)

    channels, height, width = input_shape
    for model_name in MODEL_REGISTRY.keys():
        print(f"\n📊 Building {model_name}...")

        head = {'num_classes': num_classes} if num_classes is not None else {'include_top': False}
        model = create_model(model_name, input_channels=channels, input_width=width,
                             input_height=height, **head)
        model.eval()

        with torch.no_grad():
            output = model(torch.randn(2, *input_shape))

        param_count = sum(p.numel() for p in model.parameters())

        print(f"   ✅ Output shape: {tuple(output.shape)}")
        print(f"   📈 Parameters: {param_count:,}")
        print(f"   💾 Model size: {param_count * 4 / (1024 * 1024):.2f} MB")

    print("\n✅ Model creation demo completed!")


def build_from_config(config: Config, save_path: Optional[str] = None,
                      forward: bool = True) -> ResNet:
    """Build the network described by ``config``, log its layout and optionally save it"""
    setup_logging('resnet', config.logging.log_level, config.logging.log_file)

    model = ResNet.from_config(config.model)
    model_logger = setup_model_logging(
        model,
        log_dir=config.logging.log_dir,
        use_tensorboard=config.logging.use_tensorboard,
        log_level=config.logging.log_level
    )

    input_shape = (config.model.input_channels, config.model.input_height, config.model.input_width)
    model_logger.log_graph(model, input_shape)

    if forward:
        model.eval()
        with torch.no_grad():
            output = model(torch.zeros(1, *input_shape))
        model_logger.logger.info(f"Forward pass output: {tuple(output.shape)}")

    if save_path:
        model.save_model(save_path)

    model_logger.close()
    return model


def main(argv: Optional[List[str]] = None) -> int:
    """Main demo function"""
    # Demo options; everything else configures the network
    demo_options = argparse.ArgumentParser(add_help=False)
    demo_options.add_argument('--all', action='store_true',
                              help='Build every registered version')
    demo_options.add_argument('--save', type=str, default=None,
                              help='Path of the weights archive to write')
    demo_options.add_argument('--no-forward', action='store_true',
                              help='Skip the dummy forward pass')

    parser = build_arg_parser(parents=[demo_options], description='ResNet Construction Demo')
    args = parser.parse_args(argv)
    config = config_from_namespace(args)

    if args.all:
        input_shape = (config.model.input_channels, config.model.input_height, config.model.input_width)
        demo_model_creation(input_shape, num_classes=config.model.output_classes)
        return 0

    print(f"🚀 ResNet-{config.model.version} (supported: {list(SUPPORTED_VERSIONS)})")
    model = build_from_config(config, save_path=args.save, forward=not args.no_forward)

    print(f"🎯 Output shape: {model.output_shape}")
    if args.save:
        print(f"💾 Weights saved to: {args.save}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
