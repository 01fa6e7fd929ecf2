"""
Purpose: To define the neural network architecture.

"""

import logging
from typing import Sequence

import torch
import torch.nn as nn

from .config import HORIZON

logger = logging.getLogger(__name__)


# Model Definitions

class DemandLSTM(nn.Module):
    """
    Stacked LSTM forecaster for hourly windows:
    x: (B, lookback, F) → y: (B, horizon)

    Every LSTM layer sees dropout on its input; only the last hidden state feeds the linear head.

    No recurrent (hidden-to-hidden) dropout is applied: nn.LSTM has no equivalent of Keras'
    recurrent_dropout, so a recurrent rate of 0.2 is not reproduced here. Input dropout is the
    only regularisation.
    """
    def __init__(
        self,
        input_size: int,
        horizon: int = HORIZON,
        hidden_sizes: Sequence[int] = (64, 32),
        dropout: float = 0.2,
    ):
        super().__init__()
        if not hidden_sizes:
            raise ValueError("hidden_sizes needs at least one layer size.")
        self.input_size = input_size
        self.horizon = horizon
        self.hidden_sizes = tuple(int(h) for h in hidden_sizes)

        self.lstm_layers = nn.ModuleList()
        in_size = input_size
        for hidden_size in self.hidden_sizes:
            self.lstm_layers.append(nn.LSTM(input_size=in_size, hidden_size=hidden_size, batch_first=True))
            in_size = hidden_size

        self.dropout = nn.Dropout(dropout)
        self.output_projection = nn.Linear(in_size, horizon)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        out = x
        for lstm in self.lstm_layers:
            out, _ = lstm(self.dropout(out))
        return self.output_projection(out[:, -1, :])
