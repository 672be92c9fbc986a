#!/usr/bin/env python3
"""
Train a Model JSON on a numeric table and export the trained model.

The data file is an .npz archive with ``features`` (rows x input units)
and ``labels`` arrays, optionally ``val_features`` and ``val_labels``.

Usage:
    python scripts/train_model.py model.json data.npz [trained_model.json]
        [--epochs N] [--batch-size N] [--learning-rate LR]
        [--early-stopping] [--patience N] [--seed N]

The script will:
1. Load the Model JSON and build the network
2. Load the training (and validation) arrays
3. Train, printing one line per epoch
4. Write the trained-model JSON
"""

import os
import sys
import json
import argparse
import logging
from typing import Dict, Optional, Tuple

import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tabular_nn.errors import NeuralNetworkError
from tabular_nn.model_persistence import export_model_file
from tabular_nn.network import Network
from tabular_nn.trainer import EpochRecord, Trainer


def load_model_config(filepath: str) -> Dict:
    """
    Read a Model JSON file.

    Parameters:
    -----------
    filepath : str
        Path to the model JSON produced by the model designer

    Returns:
    --------
    dict
        The parsed Model JSON
    """
    print(f"📂 Loading model configuration from: {filepath}")
    with open(filepath, 'r', encoding='utf-8') as f:
        config = json.load(f)
    return config


def load_table(filepath: str) -> Tuple[np.ndarray, np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]:
    """
    Read training arrays from an .npz archive.

    Returns:
    --------
    tuple
        (features, labels, val_features, val_labels); the validation
        arrays are None when the archive has none
    """
    print(f"📂 Loading data from: {filepath}")
    with np.load(filepath) as data:
        features = data['features']
        labels = data['labels']
        val_features = data['val_features'] if 'val_features' in data else None
        val_labels = data['val_labels'] if 'val_labels' in data else None

    print(f"✅ Loaded {len(features)} training rows with {features.shape[1]} features")
    if val_features is not None:
        print(f"   - Validation: {len(val_features)} rows")
    return features, labels, val_features, val_labels


def print_epoch(record: EpochRecord) -> None:
    line = f"   epoch {record.epoch:4d}  loss {record.loss:.4f}  acc {record.accuracy * 100:6.2f}%"
    if record.val_loss is not None:
        line += f"  val_loss {record.val_loss:.4f}  val_acc {record.val_accuracy * 100:6.2f}%"
    print(line)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.split('\n')[1])
    parser.add_argument('model', help='Model JSON file')
    parser.add_argument('data', help='.npz file with features/labels')
    parser.add_argument('output', nargs='?', default='trained_model.json',
                        help='where to write the trained model')
    parser.add_argument('--epochs', type=int, default=100)
    parser.add_argument('--batch-size', type=int, default=32)
    parser.add_argument('--learning-rate', type=float, default=0.001)
    parser.add_argument('--early-stopping', action='store_true')
    parser.add_argument('--patience', type=int, default=10)
    parser.add_argument('--seed', type=int, default=None)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main training function."""
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format='%(levelname)s - %(message)s')

    print("=" * 60)
    print("Dense Network Trainer")
    print("=" * 60)

    try:
        network = Network.from_config(load_model_config(args.model), rng=args.seed)
        print(f"✅ Built network {network.sizes} ({network.count_parameters()} parameters)")

        features, labels, val_features, val_labels = load_table(args.data)

        trainer = Trainer(network, {
            'epochs': args.epochs,
            'batch_size': args.batch_size,
            'learning_rate': args.learning_rate,
            'early_stopping': args.early_stopping,
            'patience': args.patience,
            'seed': args.seed
        })

        print(f"\n🏋️  Training with loss '{trainer.loss_name}'...")
        history = trainer.train(
            features, labels, val_features, val_labels,
            on_epoch_end=print_epoch
        )
        if history.stopped_early:
            print(f"⏹️  Early stopping after {len(history)} epoch(s)")

        export_model_file(network, args.output)
        print(f"\n💾 Trained model written to {args.output}")

    except (OSError, KeyError, json.JSONDecodeError, NeuralNetworkError) as e:
        print(f"❌ Error: {e}")
        return 1

    print("\n" + "=" * 60)
    print("✅ TRAINING COMPLETE!")
    print("=" * 60)
    return 0


if __name__ == '__main__':
    sys.exit(main())
