"""
Model Logging
=============

Logging for network construction:
- File and console logging
- Configuration and architecture (shape trace) records
- Parameter counts
- Optional TensorBoard graph of the built network
"""

import json
import logging
from typing import Dict, Any, Optional
from pathlib import Path
from datetime import datetime
from dataclasses import asdict

import torch

try:
    from torch.utils.tensorboard import SummaryWriter
    TENSORBOARD_AVAILABLE = True
except ImportError:
    TENSORBOARD_AVAILABLE = False


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(name: Optional[str] = None, log_level: str = 'INFO',
                  log_file: Optional[str] = None) -> logging.Logger:
    """Setup file and console logging for ``name`` (the root logger by default).

    A named logger stops propagating to the root logger, so its records are
    written once even when the application configured root handlers too.
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Clear existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Handlers live here now; records must not reach root handlers a second time.
    if name:
        logger.propagate = False

    return logger


class ModelLogger:
    """Records what was built for one network"""

    def __init__(
        self,
        model_name: str,
        log_dir: str = "./logs",
        use_tensorboard: bool = False,
        log_level: str = "INFO"
    ):
        self.model_name = model_name
        self.log_dir = Path(log_dir)
        self.use_tensorboard = use_tensorboard and TENSORBOARD_AVAILABLE

        self.model_dir = self.log_dir / model_name
        self.model_dir.mkdir(parents=True, exist_ok=True)

        self.logger = setup_logging(model_name, log_level, str(self.model_dir / "model.log"))

        if self.use_tensorboard:
            self.tb_writer = SummaryWriter(log_dir=str(self.model_dir / "tensorboard"))
        else:
            self.tb_writer = None

        self.logger.info(f"Logging '{model_name}' to {self.model_dir}")
        if use_tensorboard and not TENSORBOARD_AVAILABLE:
            self.logger.warning("TensorBoard requested but not installed, graph logging disabled")

    def log_config(self, config: Dict[str, Any]):
        """Write the configuration the network was built from"""
        config_path = self.model_dir / "config.json"
        with open(config_path, 'w') as f:
            json.dump(config, f, indent=2)

        self.logger.info(f"Configuration logged: {config_path}")

    def log_model_info(self, model: torch.nn.Module) -> Dict[str, Any]:
        """Log parameter counts"""
        total_params = sum(p.numel() for p in model.parameters())
        trainable_params = sum(p.numel() for p in model.parameters() if p.requires_grad)

        model_info = {
            'total_parameters': total_params,
            'trainable_parameters': trainable_params,
            'model_size_mb': total_params * 4 / (1024 * 1024)  # Assuming float32
        }

        self.logger.info("Model Info:")
        self.logger.info(f"   Total parameters: {total_params:,}")
        self.logger.info(f"   Trainable parameters: {trainable_params:,}")
        self.logger.info(f"   Model size: {model_info['model_size_mb']:.2f} MB")

        return model_info

    def log_architecture(self, model) -> Path:
        """Write the shape after every construction step of a ``ResNet``"""
        architecture = {
            'version': model.config.version,
            'layers': [
                {'name': name, 'shape': list(shape.as_tuple())}
                for name, shape in model.shape_trace
            ],
            'timestamp': datetime.now().isoformat()
        }

        architecture_path = self.model_dir / "architecture.json"
        with open(architecture_path, 'w') as f:
            json.dump(architecture, f, indent=2)

        for name, shape in model.shape_trace:
            self.logger.info(f"   {name:<8} {shape}")

        return architecture_path

    def log_graph(self, model: torch.nn.Module, input_shape) -> bool:
        """Trace the network into TensorBoard, returns False when TensorBoard is off"""
        if self.tb_writer is None:
            return False

        was_training = model.training
        model.eval()
        try:
            self.tb_writer.add_graph(model, torch.zeros(1, *input_shape))
        finally:
            model.train(was_training)

        self.logger.info("Graph written to TensorBoard")
        return True

    def close(self):
        """Close all logging resources"""
        if self.tb_writer:
            self.tb_writer.close()

        self.logger.info("Model logging completed")
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()


def setup_model_logging(
    model,
    log_dir: str = "./logs",
    use_tensorboard: bool = False,
    log_level: str = "INFO"
) -> ModelLogger:
    """Create a ``ModelLogger`` for a built ``ResNet`` and record its config, size and layout"""

    model_logger = ModelLogger(
        model_name=f"resnet{model.config.version}",
        log_dir=log_dir,
        use_tensorboard=use_tensorboard,
        log_level=log_level
    )

    model_logger.log_config({'model': asdict(model.config)})
    model_logger.log_model_info(model)
    model_logger.log_architecture(model)

    return model_logger
