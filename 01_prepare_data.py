"""Data preparation entry point."""

import argparse
import logging

from bikecast.config import (
    DEFAULT_DATA_PREFIX,
    HORIZON,
    LOOKBACK,
    RAW_DATA_PATH,
    TRAIN_FRACTION,
    VOCABULARY_SCOPE,
    VOCABULARY_SCOPES,
)
from bikecast.errors import PipelineError
from bikecast.pipeline import prepare_dataset_from_file
from bikecast.utils import DataManager

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Prepare lookback/horizon window arrays from a bike rental CSV.")
    parser.add_argument(
        "--input-csv",
        type=str,
        default=RAW_DATA_PATH,
        help="Path to the raw rental CSV.",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default="data",
        help="Directory for the saved arrays.",
    )
    parser.add_argument(
        "--data-prefix",
        type=str,
        default=DEFAULT_DATA_PREFIX,
        help="Prefix for saved numpy arrays.",
    )
    parser.add_argument(
        "--train-fraction",
        type=float,
        default=TRAIN_FRACTION,
        help="Leading fraction of rows used for training.",
    )
    parser.add_argument(
        "--vocabulary-scope",
        type=str,
        choices=VOCABULARY_SCOPES,
        default=VOCABULARY_SCOPE,
        help="Fit one-hot categories on all rows or on the training rows only.",
    )
    parser.add_argument(
        "--lookback",
        type=int,
        default=LOOKBACK,
        help="Hours of history per sample.",
    )
    parser.add_argument(
        "--horizon",
        type=int,
        default=HORIZON,
        help="Hours forecast per sample.",
    )
    return parser.parse_args()


def main():
    args = parse_args()

    print("\n--- Step 1: Loading, normalizing and windowing ---")
    try:
        dataset = prepare_dataset_from_file(
            args.input_csv,
            lookback=args.lookback,
            horizon=args.horizon,
            train_fraction=args.train_fraction,
            vocabulary_scope=args.vocabulary_scope,
        )
    except PipelineError as exc:
        logger.error("Data preparation failed: %s", exc)
        raise SystemExit(1)

    print("\n--- Step 2: Saving processed arrays for training ---")
    with dataset:
        DataManager(args.data_dir).save_dataset(
            dataset,
            filename_prefix=args.data_prefix,
            metadata={
                "input_csv": args.input_csv,
                "train_fraction": args.train_fraction,
                "vocabulary_scope": args.vocabulary_scope,
            },
        )

    print("\nData preparation complete.")


if __name__ == "__main__":
    main()
