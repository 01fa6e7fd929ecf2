"""Training entry point: load a CSV (or the arrays cached by 01_prepare_data.py), train the LSTM, score the test days."""

import argparse
import logging

from bikecast.config import LSTM_CONFIG, RAW_DATA_PATH
from bikecast.engine import EpochMetrics
from bikecast.errors import PipelineError
from bikecast.pipeline import BikeDemandPipeline

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Train and evaluate the bike-demand LSTM.")
    parser.add_argument("--input-csv", type=str, default=RAW_DATA_PATH, help="Path to the raw rental CSV.")
    parser.add_argument("--from-cache", action="store_true",
                        help="Train on the arrays saved by 01_prepare_data.py instead of the CSV.")
    parser.add_argument("--data-dir", type=str, default=LSTM_CONFIG["data_dir"], help="Directory of cached arrays.")
    parser.add_argument("--data-prefix", type=str, default=LSTM_CONFIG["data_prefix"], help="Prefix of cached arrays.")
    parser.add_argument("--epochs", type=int, default=LSTM_CONFIG["num_epochs"], help="Training epochs.")
    parser.add_argument("--batch-size", type=int, default=LSTM_CONFIG["batch_size"], help="Mini-batch size.")
    parser.add_argument("--learning-rate", type=float, default=LSTM_CONFIG["learning_rate"], help="Adam learning rate.")
    parser.add_argument("--early-stopping-patience", type=int, default=None,
                        help="Stop after this many epochs without test-loss improvement (off by default).")
    parser.add_argument("--device", type=str, default=LSTM_CONFIG["device"], help="Torch device, e.g. cpu or cuda.")
    parser.add_argument("--experiments-dir", type=str, default=LSTM_CONFIG["experiments_dir"],
                        help="Where experiment folders are created.")
    parser.add_argument("--save-arrays", action="store_true", help="Also cache the prepared window arrays.")
    return parser.parse_args()


def log_progress(record: EpochMetrics):
    logger.debug("Training progress: %.0f%% (loss=%.4f, mae=%.4f)", record.progress, record.loss, record.mae)


def main():
    args = parse_args()
    pipeline = BikeDemandPipeline({
        "num_epochs": args.epochs,
        "batch_size": args.batch_size,
        "learning_rate": args.learning_rate,
        "early_stopping_patience": args.early_stopping_patience,
        "device": args.device,
        "data_dir": args.data_dir,
        "data_prefix": args.data_prefix,
        "experiments_dir": args.experiments_dir,
    })
    try:
        pipeline.run(
            args.input_csv,
            callbacks=[log_progress],
            save_arrays=args.save_arrays,
            from_cache=args.from_cache,
        )
    except (PipelineError, FileNotFoundError) as exc:
        logger.error("Run aborted: %s", exc)
        raise SystemExit(1)
    finally:
        pipeline.reset()

    print("✅ Pipeline finished successfully.")


if __name__ == "__main__":
    main()
