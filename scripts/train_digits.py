#!/usr/bin/env python3
"""
Train the digit network on every installed font.

Renders 0-9 in each font, trains until every digit in every font is
recognised (or the epoch cap is reached), then writes a per-sample results
CSV. If a model file already exists it is loaded instead of retrained.

Usage:
    python scripts/train_digits.py [--model models/digits.npz] [--retrain]
                                   [--fonts DIR ...] [--font-limit 300]
                                   [--results results.csv]
                                   [--visualize network.png]
"""

import argparse
import logging
import os
import sys

from digit_ocr.config import Settings
from digit_ocr.context import RecognitionContext
from digit_ocr.dataset import build_sample_set
from digit_ocr.fonts import discover_fonts
from digit_ocr.trainer import TrainingOutcome
from digit_ocr.visualizer import render_network


def parse_args(argv=None) -> argparse.Namespace:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description=__doc__.split('\n\n')[0])
    parser.add_argument('--model', default=settings.model_path,
                        help='Model file to load or create')
    parser.add_argument('--retrain', action='store_true',
                        help='Ignore an existing model file and train again')
    parser.add_argument('--fonts', nargs='*', default=settings.font_dirs,
                        help='Font directories (defaults to the system ones)')
    parser.add_argument('--font-limit', type=int, default=settings.font_limit)
    parser.add_argument('--max-epochs', type=int,
                        default=settings.training.max_epochs)
    parser.add_argument('--warmup-epochs', type=int,
                        default=settings.training.warmup_epochs)
    parser.add_argument('--results', default='results.csv',
                        help='Where to write the per-sample verification CSV')
    parser.add_argument('--visualize', metavar='PNG',
                        help='Also save a picture of the trained network')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main training function."""
    args = parse_args(argv)
    settings = Settings.from_env()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("=" * 60)
    print("Digit OCR trainer")
    print("=" * 60)

    fonts = discover_fonts(args.fonts, limit=args.font_limit)
    if not fonts:
        print("❌ Error: no usable fonts found")
        return 1

    samples = build_sample_set(fonts, settings.canvas_size)
    print(f"# Fonts: {len(fonts)} | # Digits: {len(samples)}")

    context = RecognitionContext.from_config(settings.network, samples, args.model)
    if args.retrain and context.has_saved_model():
        os.remove(args.model)

    training = settings.training
    training.max_epochs = args.max_epochs
    training.warmup_epochs = args.warmup_epochs

    def on_progress(data):
        print(f"Epoch: {data['epoch']}")

    result = context.load_or_train(training, callback=on_progress)
    if result is None:
        print(f"📂 AI model loaded from {args.model}")
    elif result.outcome is TrainingOutcome.CONVERGED:
        print(f"✅ Training complete after {result.epochs} epochs. "
              f"All characters are recognised")
    else:
        print(f"⚠️  Training stopped after {result.epochs} epochs "
              f"({result.outcome.value}); try another seed or more epochs")

    report = context.verify()
    with open(args.results, 'w') as fh:
        fh.write(report.to_csv())
    print(f"📝 Results written to {args.results}")
    if not report.all_correct:
        print(f"Failed match count: {report.mismatch_count}")

    if args.visualize:
        render_network(context.network, 900, 300).save(args.visualize)
        print(f"🖼  Network visualisation saved to {args.visualize}")

    return 0 if report.all_correct else 2


if __name__ == '__main__':
    sys.exit(main())
