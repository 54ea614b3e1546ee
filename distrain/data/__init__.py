"""
distrain.data — Data Pipeline
=============================
Everything between a raw record and a row the gradient engine can read:

    1. **Columns** (`columns.py`):
       Which raw columns feed the model, at which vector position, and
       how categorical values become bin indices.

    2. **Dataset** (`dataset.py`):
       An append-then-freeze record store, memory first, disk beyond a
       byte budget.

    3. **Sampler** (`sampler.py`):
       Routes each record to training or validation (hash split, random
       split or bagging with replacement).

Information Flow:
    Raw row
        → Columns (vectorize)
        → Sampler (keep? duplicate? train or validation?)
        → TieredDataset (training / validation)
        → DataLoader (feeds batches to the gradient engine)
"""

from distrain.data.dataset import DataRecord, TieredDataset, create_dataset_pair
from distrain.data.columns import CategoricalEncoder, ColumnMapping, assemble_data_pair
from distrain.data.sampler import Sampler, SamplingMode
