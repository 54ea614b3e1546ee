#!/usr/bin/env python3
"""
Tests for distrain configuration, column mapping, tiered datasets,
sampling, the training worker and the ensemble scorer.

Run all tests:
    python -m pytest tests/ -v --tb=short

Run one test class:
    python -m pytest tests/test_distrain.py -v -k TestSampler
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


# =============================================================================
# Helpers
# =============================================================================

def make_columns(final_select=()):
    """id (meta), tag (target), x0, x1 (numeric), state (categorical)."""
    from distrain.config import ColumnConfig
    columns = [
        ColumnConfig(column_num=0, column_name="id", column_flag="Meta"),
        ColumnConfig(column_num=1, column_name="tag", column_flag="Target"),
        ColumnConfig(column_num=2, column_name="x0", mean=10.0, std_dev=2.0),
        ColumnConfig(column_num=3, column_name="x1", mean=0.0, std_dev=1.0),
        ColumnConfig(
            column_num=4, column_name="state", column_type="C",
            bin_category=["CA", "NY", None], bin_pos_rate=[0.2, 0.5, 0.1],
            mean=0.3, std_dev=0.1,
        ),
    ]
    for column in columns:
        column.final_select = column.column_num in final_select
    return columns


def make_rows(n, seed=0):
    """Normalized rows ``tag|x0|x1|state`` of a separable toy problem."""
    rng = np.random.default_rng(seed)
    x = rng.normal(size=(n, 3))
    tags = (x[:, 0] - x[:, 1] > 0).astype(int)
    return ["|".join([str(t)] + [f"{v:.6f}" for v in row]) for t, row in zip(tags, x)]


class StubRng:
    """Deterministic stand-in for numpy's Generator."""

    def __init__(self, draw=0.9, k=1, position=0):
        self.draw = draw
        self.k = k
        self.position = position

    def random(self):
        return self.draw

    def poisson(self, lam):
        return self.k

    def integers(self, high):
        return self.position


def make_dataset(tmp_path, name="data.bin", input_count=1, budget=1 << 20):
    from distrain.data.dataset import TieredDataset
    return TieredDataset(input_count, 1, budget, tmp_path / name)


# =============================================================================
# Config Tests
# =============================================================================

class TestConfig:
    """Tests for the configuration system."""

    def test_smoke_test_config(self):
        """Smoke test config should validate and describe a tiny NN."""
        from distrain.config import ModelConfig
        config = ModelConfig.for_smoke_test()
        config.validate()
        assert config.algorithm == "NN"
        assert config.train.batch_size == 16
        assert config.learning_rate == 0.1

    def test_unknown_algorithm(self):
        """Unknown algorithm names are rejected."""
        from distrain.config import ModelConfig
        config = ModelConfig(algorithm="KNN")
        with pytest.raises(ValueError, match="Unknown algorithm"):
            config.validate()

    def test_invalid_activation(self):
        """Every hidden layer needs a supported activation."""
        from distrain.config import ModelConfig, TrainParams
        config = ModelConfig(train=TrainParams(params={
            "LearningRate": 0.1, "NumHiddenLayers": 1,
            "ActivationFunc": ["softsign"], "NumHiddenNodes": [4],
        }))
        with pytest.raises(ValueError, match="activation"):
            config.validate()

    def test_gbdt_aliases(self):
        """GBT and GBDT both name gradient-boosted trees."""
        from distrain.config import ModelConfig, is_tree_algorithm
        assert ModelConfig(algorithm="GBT").is_gbdt
        assert ModelConfig(algorithm="gbdt").is_gbdt
        assert is_tree_algorithm("RF")
        assert not is_tree_algorithm("NN")

    def test_yaml_round_trip(self, tmp_path):
        """Config should save to YAML and load back identically."""
        from distrain.config import ModelConfig
        config = ModelConfig.for_smoke_test()
        yaml_path = tmp_path / "model.yaml"
        config.to_yaml(yaml_path)

        loaded = ModelConfig.from_yaml(yaml_path)
        assert loaded.to_dict() == config.to_dict()

    def test_column_config_camel_case(self, tmp_path):
        """Column configs load from camelCase JSON."""
        import json
        from distrain.config import load_column_config_list
        path = tmp_path / "columns.json"
        path.write_text(json.dumps([
            {"columnNum": 0, "columnName": "tag", "columnFlag": "Target"},
            {"columnNum": 1, "columnName": "x", "finalSelect": True, "stdDev": 2.0},
        ]))
        columns = load_column_config_list(path)
        assert columns[0].is_target
        assert columns[1].final_select
        assert columns[1].std_dev == 2.0

    def test_hdfs_source_not_supported(self, tmp_path):
        """Only local configuration sources are readable."""
        from distrain.config import load_model_config
        with pytest.raises(NotImplementedError):
            load_model_config(tmp_path / "model.yaml", "hdfs")

    def test_worker_props_from_mapping(self):
        """Job properties parse booleans case-insensitively."""
        from distrain.config import SourceType, WorkerProps
        props = WorkerProps.from_mapping({
            "distrain.model.config": "model.yaml",
            "distrain.dry.train": "TRUE",
            "distrain.poisson.sampler": "false",
            "distrain.data.memory.fraction": "0.25",
            "distrain.seed": "7",
        })
        assert props.model_config_path == "model.yaml"
        assert props.dry_train is True
        assert props.poisson_sampler is False
        assert props.memory_fraction == 0.25
        assert props.seed == 7
        assert props.source_type is SourceType.LOCAL


# =============================================================================
# Column Mapping Tests
# =============================================================================

class TestColumnMapping:
    """Tests for column selection and categorical encoding."""

    def test_no_selection_uses_all_candidates(self):
        """Without final-select columns every candidate maps in config order."""
        from distrain.data.columns import ColumnMapping
        mapping = ColumnMapping.from_columns(make_columns())
        assert mapping.no_var_select
        assert dict(mapping.positions) == {2: 0, 3: 1, 4: 2}

    def test_all_candidates_selected(self):
        """Selecting every candidate is the same as no selection."""
        from distrain.data.columns import ColumnMapping
        mapping = ColumnMapping.from_columns(make_columns(final_select=(2, 3, 4)))
        assert mapping.no_var_select
        assert dict(mapping.positions) == {2: 0, 3: 1, 4: 2}

    def test_post_selection(self):
        """With partial selection only final-select columns are mapped."""
        from distrain.data.columns import ColumnMapping
        mapping = ColumnMapping.from_columns(make_columns(final_select=(2, 4)))
        assert not mapping.no_var_select
        assert dict(mapping.positions) == {2: 0, 4: 1}
        assert 3 not in mapping
        assert mapping.input_width == 2

    def test_positions_are_read_only(self):
        """The position map cannot be changed after construction."""
        from distrain.data.columns import ColumnMapping
        mapping = ColumnMapping.from_columns(make_columns())
        with pytest.raises(TypeError):
            mapping.positions[9] = 3

    def test_none_columns_rejected(self):
        """A mapping needs a column configuration."""
        from distrain.data.columns import ColumnMapping
        with pytest.raises(ValueError):
            ColumnMapping.from_columns(None)

    def test_categorical_encoder(self):
        """Known, missing and unseen categories get stable bin indices."""
        from distrain.data.columns import CategoricalEncoder
        encoder = CategoricalEncoder.from_columns(make_columns())
        assert encoder.index_of(4, "NY") == 1
        assert encoder.index_of(4, " CA ") == 0
        assert encoder.index_of(4, None) == 2
        assert encoder.index_of(4, "TX") == 3
        assert 2 not in encoder

    def test_assemble_tree_vector(self):
        """Tree algorithms get raw numbers and bin indices."""
        from distrain.config import ModelConfig
        from distrain.data.columns import CategoricalEncoder, ColumnMapping, assemble_data_pair
        columns = make_columns()
        record = assemble_data_pair(
            {"tag": "1", "x0": "12", "x1": "oops", "state": "NY"},
            columns,
            ColumnMapping.from_columns(columns),
            CategoricalEncoder.from_columns(columns),
            ModelConfig(algorithm="GBT"),
        )
        assert record.input.tolist() == [12.0, 0.0, 1.0]
        assert record.ideal.tolist() == [1.0]

    def test_assemble_normalized_vector(self):
        """Other algorithms get clipped z-scores."""
        from distrain.config import ModelConfig
        from distrain.data.columns import CategoricalEncoder, ColumnMapping, assemble_data_pair
        columns = make_columns()
        record = assemble_data_pair(
            {"tag": "0", "x0": "14", "x1": "100", "state": "NY"},
            columns,
            ColumnMapping.from_columns(columns),
            CategoricalEncoder.from_columns(columns),
            ModelConfig(algorithm="NN"),
        )
        assert record.input[0] == pytest.approx(2.0)
        assert record.input[1] == pytest.approx(4.0)
        assert record.input[2] == pytest.approx(2.0)
        assert record.ideal.tolist() == [0.0]

    def test_unknown_tag_is_nan(self):
        """A target that is neither positive nor negative has no ideal."""
        from distrain.config import ModelConfig
        from distrain.data.columns import CategoricalEncoder, ColumnMapping, assemble_data_pair
        columns = make_columns()
        record = assemble_data_pair(
            {"tag": "maybe"}, columns, ColumnMapping.from_columns(columns),
            CategoricalEncoder.from_columns(columns), ModelConfig(),
        )
        assert np.isnan(record.ideal[0])


# =============================================================================
# Tiered Dataset Tests
# =============================================================================

class TestTieredDataset:
    """Tests for the memory/disk record store."""

    def _record(self, value, significance=1.0):
        from distrain.data.dataset import DataRecord
        return DataRecord(np.array([value, value + 1.0]), np.array([1.0]), significance)

    def test_spill_to_disk(self, tmp_path):
        """Records beyond the memory budget land in the backing file."""
        from distrain.data.dataset import TieredDataset
        ds = TieredDataset(2, 1, memory_budget_bytes=2 * 4 * 8, path=tmp_path / "t.bin")
        for i in range(5):
            ds.append(self._record(float(i)))

        assert ds.memory_count == 2
        assert ds.disk_count == 3
        assert ds.record_count == 5
        assert (tmp_path / "t.bin").exists()
        ds.dispose()

    def test_read_at_both_tiers(self, tmp_path):
        """read_at works for memory and disk positions, before and after finalize."""
        from distrain.data.dataset import DataRecord, TieredDataset
        ds = TieredDataset(2, 1, memory_budget_bytes=2 * 4 * 8, path=tmp_path / "t.bin")
        for i in range(5):
            ds.append(self._record(float(i), significance=float(i + 1)))

        buffer = DataRecord.zeros(2, 1)
        assert ds.read_at(1, buffer).input.tolist() == [1.0, 2.0]
        assert ds.read_at(3, buffer).input.tolist() == [3.0, 4.0]
        assert buffer.significance == 4.0

        ds.finalize_load()
        assert ds.read_at(4, buffer).input.tolist() == [4.0, 5.0]
        inputs, ideal, significance = ds[3]
        assert inputs.tolist() == [3.0, 4.0]
        assert ideal.tolist() == [1.0]
        assert float(significance) == 4.0
        ds.dispose()

    def test_append_after_finalize(self, tmp_path):
        """A finalized dataset is closed for appends."""
        from distrain.data.dataset import DatasetStateError
        ds = make_dataset(tmp_path, input_count=2)
        ds.finalize_load()
        with pytest.raises(DatasetStateError):
            ds.append(self._record(0.0))
        with pytest.raises(DatasetStateError):
            ds.finalize_load()
        ds.dispose()

    def test_dispose_removes_file(self, tmp_path):
        """Dispose releases the disk tier and is idempotent."""
        from distrain.data.dataset import DatasetStateError, TieredDataset
        path = tmp_path / "t.bin"
        with TieredDataset(2, 1, memory_budget_bytes=0, path=path) as ds:
            ds.append(self._record(1.0))
            ds.finalize_load()
            assert path.exists()
        assert not path.exists()
        ds.dispose()
        with pytest.raises(DatasetStateError):
            ds.read_at(0, self._record(0.0))

    def test_shape_mismatch(self, tmp_path):
        """Records must match the dataset's node counts."""
        from distrain.data.dataset import DataRecord
        ds = make_dataset(tmp_path, input_count=3)
        with pytest.raises(ValueError):
            ds.append(DataRecord(np.zeros(2), np.zeros(1)))
        ds.dispose()

    def test_pure_disk_pair(self, tmp_path):
        """Pure-disk mode gives both datasets a zero memory budget."""
        from distrain.data.dataset import create_dataset_pair
        training, validation = create_dataset_pair(
            2, 1, on_disk=True, memory_fraction=0.5, validation_rate=0.2, data_dir=tmp_path
        )
        assert training.memory_capacity == 0
        assert validation.memory_capacity == 0
        training.dispose()
        validation.dispose()

    def test_tiered_pair_split(self, tmp_path, monkeypatch):
        """Tiered mode splits the budget by the validation rate."""
        from distrain.data import dataset
        monkeypatch.setattr(dataset, "available_memory", lambda: 1000 * 32)
        training, validation = dataset.create_dataset_pair(
            2, 1, on_disk=False, memory_fraction=0.5, validation_rate=0.2, data_dir=tmp_path
        )
        assert training.memory_capacity == 400
        assert validation.memory_capacity == 100
        training.dispose()
        validation.dispose()


# =============================================================================
# Sampler Tests
# =============================================================================

class TestSampler:
    """Tests for training/validation routing."""

    def _record(self, value=1.0, significance=2.0):
        from distrain.data.dataset import DataRecord
        return DataRecord(np.array([value]), np.array([1.0]), significance)

    def test_hash_split_is_pure(self):
        """The hash split depends only on the hash and the rate."""
        from distrain.data.sampler import hash_to_validation
        for h in range(0, 10_000, 7):
            assert hash_to_validation(h, 0.2) == hash_to_validation(h, 0.2)
            assert hash_to_validation(h, 0.2) == (h % 100 < 20)

    def test_hash_mode_is_reproducible(self, tmp_path):
        """Two hash-mode samplers route the same records identically."""
        from distrain.data.sampler import Sampler, SamplingMode
        runs = []
        for run in range(2):
            training = make_dataset(tmp_path, f"t{run}.bin")
            validation = make_dataset(tmp_path, f"v{run}.bin")
            sampler = Sampler(SamplingMode.HASH, 0.3, seed=run)
            for h in range(200):
                sampler.route(h, self._record(float(h)), training, validation)
            runs.append((training.record_count, validation.record_count))
            training.dispose()
            validation.dispose()
        assert runs[0] == runs[1]
        assert runs[0][1] == 60

    def test_poisson_zero_draw_drops_record(self, tmp_path):
        """k = 0 adds nothing to either partition."""
        from distrain.data.sampler import Sampler, SamplingMode
        training, validation = make_dataset(tmp_path, "t.bin"), make_dataset(tmp_path, "v.bin")
        sampler = Sampler(SamplingMode.POISSON, 0.2, rng=StubRng(draw=0.9, k=0))
        assert sampler.route(1, self._record(), training, validation) == 0
        assert training.record_count == validation.record_count == 0

    def test_poisson_scales_significance(self, tmp_path):
        """k > 0 multiplies the record's weight by k."""
        from distrain.data.dataset import DataRecord
        from distrain.data.sampler import Sampler, SamplingMode
        training, validation = make_dataset(tmp_path, "t.bin"), make_dataset(tmp_path, "v.bin")
        sampler = Sampler(SamplingMode.POISSON, 0.2, rng=StubRng(draw=0.9, k=3))
        assert sampler.route(1, self._record(significance=2.0), training, validation) == 1
        assert training.record_count == 1
        assert training.read_at(0, DataRecord.zeros(1, 1)).significance == 6.0

    def test_random_split_by_draw(self, tmp_path):
        """Draws below the validation rate go to validation."""
        from distrain.data.sampler import Sampler, SamplingMode
        training, validation = make_dataset(tmp_path, "t.bin"), make_dataset(tmp_path, "v.bin")
        Sampler(SamplingMode.RANDOM, 0.2, rng=StubRng(draw=0.1)).route(
            1, self._record(), training, validation
        )
        Sampler(SamplingMode.RANDOM, 0.2, rng=StubRng(draw=0.5)).route(
            1, self._record(), training, validation
        )
        assert training.record_count == 1
        assert validation.record_count == 1

    def test_legacy_replacement_rereads_row(self, tmp_path):
        """Above the threshold a re-read existing row replaces the new one."""
        from distrain.data.dataset import DataRecord
        from distrain.data.sampler import BAGGING_THRESHOLD, Sampler, SamplingMode
        training, validation = make_dataset(tmp_path, "t.bin"), make_dataset(tmp_path, "v.bin")
        for i in range(BAGGING_THRESHOLD):
            training.append(self._record(float(i)))
        validation.append(self._record(-1.0))

        sampler = Sampler(
            SamplingMode.LEGACY_REPLACEMENT, 0.2, rng=StubRng(draw=0.3, position=5)
        )
        sampler.route(1, self._record(9999.0), training, validation)

        last = training.read_at(training.record_count - 1, DataRecord.zeros(1, 1))
        assert last.input.tolist() == [5.0]

    def test_legacy_below_threshold_is_plain_split(self, tmp_path):
        """Before both partitions fill up the legacy mode routes the raw record."""
        from distrain.data.dataset import DataRecord
        from distrain.data.sampler import Sampler, SamplingMode
        training, validation = make_dataset(tmp_path, "t.bin"), make_dataset(tmp_path, "v.bin")
        training.append(self._record(0.0))
        validation.append(self._record(-1.0))

        sampler = Sampler(
            SamplingMode.LEGACY_REPLACEMENT, 0.2, rng=StubRng(draw=0.3, position=0)
        )
        sampler.route(1, self._record(42.0), training, validation)
        assert training.read_at(1, DataRecord.zeros(1, 1)).input.tolist() == [42.0]

    def test_mode_from_config(self):
        """The configuration picks exactly one sampling mode."""
        from distrain.config import ModelConfig, TrainParams
        from distrain.data.sampler import Sampler, SamplingMode
        fixed = ModelConfig(train=TrainParams(fix_initial_input=True))
        bagging = ModelConfig(train=TrainParams(bagging_with_replacement=True))
        assert Sampler.from_config(fixed, False).mode is SamplingMode.HASH
        assert Sampler.from_config(bagging, True).mode is SamplingMode.POISSON
        assert Sampler.from_config(bagging, False).mode is SamplingMode.LEGACY_REPLACEMENT
        assert Sampler.from_config(ModelConfig(), True).mode is SamplingMode.RANDOM


# =============================================================================
# Model Tests
# =============================================================================

class TestModels:
    """Tests for the scorable model families."""

    def test_network_flat_weights(self):
        """Flat weights round-trip through the network."""
        from distrain.model.network import FeedForwardNetwork
        net = FeedForwardNetwork(3, 1, [4], ["tanh"], seed=0)
        assert net.weight_count == 3 * 4 + 4 + 4 + 1
        weights = np.arange(net.weight_count, dtype=np.float64) / 100
        net.set_flat_weights(weights)
        np.testing.assert_allclose(net.flat_weights(), weights)
        with pytest.raises(ValueError):
            net.set_flat_weights(weights[:-1])

    def test_network_output_range(self):
        """Network outputs pass through a final sigmoid."""
        from distrain.model.network import FeedForwardNetwork
        net = FeedForwardNetwork(3, 2, [4], ["relu"], seed=0)
        out = net.compute(np.array([1.0, -2.0, 0.5]))
        assert out.shape == (2,)
        assert np.all((out > 0) & (out < 1))

    def test_logistic_regression_zero_weights(self):
        """Zero weights give exactly 0.5."""
        from distrain.model.linear import LogisticRegressionModel
        model = LogisticRegressionModel(3, weights=[0.0, 0.0, 0.0, 0.0])
        assert model.compute(np.ones(3)).tolist() == [0.5]

    def test_tree_weights(self):
        """GBDT shrinks every tree after the first; RF weighs all equally."""
        from distrain.model.tree import EnsembleKind, tree_weights
        assert tree_weights(EnsembleKind.GBDT, 3, 0.1) == [1.0, 0.1, 0.1]
        assert tree_weights(EnsembleKind.RF, 3, 0.1) == [1.0, 1.0, 1.0]

    def test_save_load_network(self, tmp_path):
        """A saved network scores identically after loading."""
        from distrain.model.io import load_model, save_model
        from distrain.model.network import FeedForwardNetwork
        net = FeedForwardNetwork(3, 1, [4], ["sigmoid"], seed=1)
        save_model(net, tmp_path / "model0.pt")
        loaded = load_model(tmp_path / "model0.pt")
        x = np.array([0.1, 0.2, 0.3])
        np.testing.assert_allclose(loaded.compute(x), net.compute(x))

    def test_network_seed_keeps_global_rng(self):
        """A seeded network is reproducible and leaves torch's global RNG alone."""
        import torch
        from distrain.model.network import FeedForwardNetwork
        torch.manual_seed(123)
        expected = torch.rand(3)

        torch.manual_seed(123)
        first = FeedForwardNetwork(3, 1, [4], ["tanh"], seed=7)
        assert torch.equal(torch.rand(3), expected)

        second = FeedForwardNetwork(3, 1, [4], ["tanh"], seed=7)
        np.testing.assert_array_equal(first.flat_weights(), second.flat_weights())

    def test_save_load_logistic_regression(self, tmp_path):
        """A saved logistic regression keeps its weights and outputs."""
        from distrain.model.base import ModelKind
        from distrain.model.io import load_model, save_model
        from distrain.model.linear import LogisticRegressionModel
        model = LogisticRegressionModel(3, weights=[0.5, -1.0, 2.0, 0.1])
        save_model(model, tmp_path / "model0.pt")
        loaded = load_model(tmp_path / "model0.pt")
        assert isinstance(loaded, LogisticRegressionModel)
        assert loaded.kind is ModelKind.LOGISTIC_REGRESSION
        assert loaded.input_count == 3
        np.testing.assert_allclose(loaded.flat_weights(), model.flat_weights())
        x = np.array([0.2, -0.4, 1.0])
        np.testing.assert_allclose(loaded.compute(x), model.compute(x))

    def _svm_data(self):
        rng = np.random.default_rng(0)
        x = rng.normal(size=(60, 3))
        y = (x[:, 0] + x[:, 1] > 0).astype(int)
        return x, y

    def test_svm_probability_output(self, tmp_path):
        """SVMs with probability estimates score the positive-class probability."""
        from sklearn.svm import SVC
        from distrain.model.io import load_model, save_model
        from distrain.model.linear import SVMModel
        x, y = self._svm_data()
        estimator = SVC(probability=True, random_state=0).fit(x, y)
        model = SVMModel(estimator)
        assert model.input_count == 3

        out = model.compute(x[0])
        assert out.shape == (1,)
        assert 0.0 <= out[0] <= 1.0
        assert out[0] == pytest.approx(estimator.predict_proba(x[:1])[0, 1])

        save_model(model, tmp_path / "model0.joblib")
        loaded = load_model(tmp_path / "model0.joblib")
        assert isinstance(loaded, SVMModel)
        np.testing.assert_allclose(loaded.compute(x[0]), out)

    def test_svm_decision_function_output(self, tmp_path):
        """SVMs without probability estimates score the decision function."""
        from sklearn.svm import LinearSVC
        from distrain.model.io import load_model, save_model
        from distrain.model.linear import SVMModel
        x, y = self._svm_data()
        estimator = LinearSVC(random_state=0).fit(x, y)
        model = SVMModel(estimator)
        assert model.input_count == 3
        assert model.compute(x[1])[0] == pytest.approx(estimator.decision_function(x[1:2])[0])

        save_model(model, tmp_path / "model1.joblib")
        loaded = load_model(tmp_path / "model1.joblib")
        np.testing.assert_allclose(loaded.compute(x[1]), model.compute(x[1]))

    def test_unfitted_svm_rejected(self):
        """An SVM must be fitted before it can be scored."""
        from sklearn.svm import SVC
        from distrain.model.linear import SVMModel
        with pytest.raises(ValueError):
            SVMModel(SVC())

    def test_load_unknown_extension(self, tmp_path):
        """Unknown model files are rejected."""
        from distrain.model.io import load_model
        path = tmp_path / "model.bin"
        path.write_bytes(b"")
        with pytest.raises(ValueError):
            load_model(path)


# =============================================================================
# Gradient Engine Tests
# =============================================================================

class TestGradientEngine:
    """Tests for gradient and error computation."""

    def _datasets(self, tmp_path, n=64):
        from distrain.data.dataset import DataRecord, TieredDataset
        rng = np.random.default_rng(0)
        training = TieredDataset(2, 1, 1 << 20, tmp_path / "t.bin")
        validation = TieredDataset(2, 1, 1 << 20, tmp_path / "v.bin")
        for i in range(n):
            x = rng.normal(size=2)
            record = DataRecord(x, np.array([float(x[0] > 0)]))
            (validation if i % 4 == 0 else training).append(record)
        training.finalize_load()
        validation.finalize_load()
        return training, validation

    def test_gradient_shape(self, tmp_path):
        """Gradients have one entry per weight."""
        from distrain.model.network import FeedForwardNetwork
        from distrain.training.gradient import GradientEngine
        training, validation = self._datasets(tmp_path)
        net = FeedForwardNetwork(2, 1, [3], ["tanh"], seed=0)
        engine = GradientEngine(net, training, validation, batch_size=8)
        engine.run()
        assert engine.gradients.shape == (net.weight_count,)
        assert np.any(engine.gradients != 0)
        assert engine.error > 0
        assert engine.calculate_error() > 0

    def test_descent_step_reduces_error(self, tmp_path):
        """A small step against the gradient lowers the training error."""
        from distrain.model.network import FeedForwardNetwork
        from distrain.training.gradient import GradientEngine
        training, validation = self._datasets(tmp_path)
        engine = GradientEngine(
            FeedForwardNetwork(2, 1, [3], ["tanh"], seed=0), training, validation
        )
        engine.run()
        before = engine.error
        engine.set_weights(engine.updated_weights(0.1))
        engine.run()
        assert engine.error < before

    def test_batch_size_does_not_change_gradient(self, tmp_path):
        """Gradients are a sum over records, independent of batching."""
        from distrain.model.network import FeedForwardNetwork
        from distrain.training.gradient import GradientEngine
        training, validation = self._datasets(tmp_path)
        net = FeedForwardNetwork(2, 1, [3], ["tanh"], seed=0)
        small = GradientEngine(net, training, validation, batch_size=1)
        small.run()
        large = GradientEngine(net, training, validation, batch_size=1000)
        large.run()
        np.testing.assert_allclose(small.gradients, large.gradients, rtol=1e-9, atol=1e-12)

    def test_cross_over_view(self, tmp_path):
        """Every fourth row of a cross-over run comes from validation."""
        from distrain.training.gradient import CrossOverView
        training, validation = self._datasets(tmp_path)
        view = CrossOverView(training, validation, seed=0)
        assert len(view) == len(training)
        np.testing.assert_array_equal(view[3][0].numpy(), validation[3][0].numpy())
        np.testing.assert_array_equal(view[2][0].numpy(), training[2][0].numpy())


# =============================================================================
# Training Worker Tests
# =============================================================================

class TestTrainingWorker:
    """End-to-end tests for the worker lifecycle."""

    def _worker(self, tmp_path, dry=False, validation_rate=0.2, epochs=1, cross_over=False):
        from distrain.config import ModelConfig, WorkerProps
        from distrain.training.worker import TrainingWorker
        config = ModelConfig.for_smoke_test()
        config.train.validation_rate = validation_rate
        config.train.epochs_per_iteration = epochs
        config.train.is_cross_over = cross_over
        worker = TrainingWorker()
        worker.init(
            WorkerProps(dry_train=dry, data_dir=str(tmp_path), seed=3),
            model_config=config,
            columns=make_columns(),
        )
        worker.load_all(make_rows(100))
        worker.finalize_load()
        return worker

    def _weights(self, worker):
        from distrain.model.network import FeedForwardNetwork
        net = FeedForwardNetwork.from_config(
            worker.input_count, worker.output_count, worker.model_config, seed=0
        )
        return net.flat_weights()

    def test_node_counts(self, tmp_path):
        """Input count falls back to the candidate count."""
        with self._worker(tmp_path) as worker:
            assert worker.input_count == 3
            assert worker.output_count == 1
            assert worker.count == 100
            assert worker.sample_count == 100
            assert (
                worker.training_data.record_count + worker.validation_data.record_count
                == 100
            )

    def test_dry_run_is_noop(self, tmp_path):
        """Dry runs report empty gradients on every iteration."""
        from distrain.training.params import DRY_ERROR, IterationContext
        with self._worker(tmp_path, dry=True) as worker:
            report = worker.compute(IterationContext(7, self._weights(worker)))
            assert report.is_empty
            assert report.train_error == DRY_ERROR
            assert report.test_error == DRY_ERROR
            assert report.weights.size == 0

    def test_first_iteration_is_noop(self, tmp_path):
        """The first iteration reports nothing even with weights present."""
        from distrain.training.params import IterationContext
        with self._worker(tmp_path) as worker:
            report = worker.compute(
                IterationContext(1, self._weights(worker), is_first_iteration=True)
            )
            assert report.is_empty

    def test_missing_weights(self, tmp_path):
        """A missing coordinator result gives no report."""
        from distrain.training.params import IterationContext
        with self._worker(tmp_path) as worker:
            assert worker.compute(IterationContext(2, None)) is None

    def test_compute_report(self, tmp_path):
        """A real iteration reports gradients, errors and the train size."""
        from distrain.training.params import IterationContext
        from distrain.training.worker import WorkerState
        with self._worker(tmp_path, epochs=2) as worker:
            weights = self._weights(worker)
            report = worker.compute(IterationContext(2, weights))
            assert report.gradients.shape == weights.shape
            assert report.weights.size == 0
            assert report.train_size == worker.training_data.record_count
            assert report.train_error > 0
            assert report.test_error > 0
            assert worker.state is WorkerState.IDLE
            assert set(report.to_dict()) == {
                "gradients", "trainError", "testError", "weights", "trainRecordCount",
            }

    def test_empty_validation_uses_train_error(self, tmp_path):
        """Without validation data the test error is the train error."""
        from distrain.training.params import IterationContext
        with self._worker(tmp_path, validation_rate=0.0) as worker:
            report = worker.compute(IterationContext(2, self._weights(worker)))
            assert worker.validation_data.record_count == 0
            assert report.test_error == report.train_error

    def test_bad_rows_are_skipped(self, tmp_path):
        """Malformed rows count as seen but are never sampled."""
        from distrain.config import ModelConfig, WorkerProps
        from distrain.training.worker import TrainingWorker
        with TrainingWorker() as worker:
            worker.init(
                WorkerProps(data_dir=str(tmp_path)),
                model_config=ModelConfig.for_smoke_test(),
                columns=make_columns(),
            )
            worker.load("1|0.5")
            worker.load("1|a|b|c")
            worker.load([0.0, 0.1, 0.2, 0.3, 2.0])
            assert worker.count == 3
            assert worker.sample_count == 1

    def test_close_releases_files(self, tmp_path):
        """Closing removes the disk tier files."""
        from distrain.config import ModelConfig, WorkerProps
        from distrain.training.worker import TrainingWorker, WorkerState
        config = ModelConfig.for_smoke_test()
        config.train.train_on_disk = True
        worker = TrainingWorker()
        worker.init(WorkerProps(data_dir=str(tmp_path)), model_config=config, columns=make_columns())
        worker.load_all(make_rows(20))
        worker.finalize_load()
        assert (tmp_path / "training.bin").exists()

        worker.close()
        worker.close()
        assert worker.state is WorkerState.CLOSED
        assert not (tmp_path / "training.bin").exists()

    def test_missing_config_is_fatal(self, tmp_path):
        """Configuration I/O failures abort startup."""
        from distrain.config import WorkerProps
        from distrain.training.worker import TrainingWorker, WorkerInitError
        worker = TrainingWorker()
        with pytest.raises(WorkerInitError):
            worker.init(WorkerProps(
                model_config_path=str(tmp_path / "missing.yaml"),
                column_config_path=str(tmp_path / "missing.json"),
            ))

    def test_cross_over_compute(self, tmp_path, monkeypatch):
        """Cross-over iterations seed every local epoch's gradient pass."""
        from distrain.training.gradient import GradientEngine
        from distrain.training.params import IterationContext
        seeds = []
        original_run = GradientEngine.run

        def recording_run(engine, seed=None):
            seeds.append(seed)
            return original_run(engine, seed=seed)

        monkeypatch.setattr(GradientEngine, "run", recording_run)
        with self._worker(tmp_path, epochs=2, cross_over=True) as worker:
            assert worker.is_cross_over
            weights = self._weights(worker)
            report = worker.compute(IterationContext(2, weights))
            assert report.gradients.shape == weights.shape
            assert report.train_size == worker.training_data.record_count
            assert np.all(np.isfinite(report.gradients))

        assert len(seeds) == 2
        assert all(isinstance(seed, int) for seed in seeds)
        assert seeds[0] == seeds[1]

    def test_plain_compute_has_no_seed(self, tmp_path, monkeypatch):
        """Without cross-over the gradient pass only sees training rows."""
        from distrain.training.gradient import GradientEngine
        from distrain.training.params import IterationContext
        seeds = []
        original_run = GradientEngine.run

        def recording_run(engine, seed=None):
            seeds.append(seed)
            return original_run(engine, seed=seed)

        monkeypatch.setattr(GradientEngine, "run", recording_run)
        with self._worker(tmp_path) as worker:
            worker.compute(IterationContext(2, self._weights(worker)))
        assert seeds == [None]

    def test_own_temp_dir_removed_on_close(self):
        """Without a data_dir the worker's temp directory goes away on close."""
        from pathlib import Path
        from distrain.config import ModelConfig, WorkerProps
        from distrain.training.worker import TrainingWorker
        config = ModelConfig.for_smoke_test()
        config.train.train_on_disk = True
        with TrainingWorker() as worker:
            worker.init(WorkerProps(), model_config=config, columns=make_columns())
            data_dir = Path(worker.data_dir)
            worker.load_all(make_rows(20))
            worker.finalize_load()
            assert (data_dir / "training.bin").exists()
        assert not data_dir.exists()

    def test_configured_data_dir_is_kept(self, tmp_path):
        """A configured data_dir outlives the worker; only its files go."""
        from distrain.config import ModelConfig, WorkerProps
        from distrain.training.worker import TrainingWorker
        data_dir = tmp_path / "tiers"
        with TrainingWorker() as worker:
            worker.init(
                WorkerProps(data_dir=str(data_dir)),
                model_config=ModelConfig.for_smoke_test(),
                columns=make_columns(),
            )
        assert data_dir.is_dir()
        assert not (data_dir / "training.bin").exists()

    def test_hdfs_source_is_fatal(self, tmp_path):
        """An unreadable configuration source aborts startup."""
        from distrain.config import SourceType, WorkerProps
        from distrain.training.worker import TrainingWorker, WorkerInitError
        props = WorkerProps(
            model_config_path=str(tmp_path / "model.yaml"),
            column_config_path=str(tmp_path / "columns.json"),
            source_type=SourceType.HDFS,
        )
        with pytest.raises(WorkerInitError) as excinfo:
            TrainingWorker().init(props)
        assert isinstance(excinfo.value.__cause__, NotImplementedError)

    def test_unknown_config_key_is_fatal(self, tmp_path):
        """A model config with an unknown key aborts startup."""
        from distrain.config import WorkerProps
        from distrain.training.worker import TrainingWorker, WorkerInitError
        path = tmp_path / "model.yaml"
        path.write_text("algorithm: NN\nnot_a_setting: 1\n")
        props = WorkerProps(
            model_config_path=str(path),
            column_config_path=str(tmp_path / "columns.json"),
        )
        with pytest.raises(WorkerInitError) as excinfo:
            TrainingWorker().init(props)
        assert isinstance(excinfo.value.__cause__, TypeError)

    def test_row_hash_ignores_line_ending(self, tmp_path):
        """A row hashes and routes the same with or without its newline."""
        from distrain.config import ModelConfig, WorkerProps
        from distrain.training.worker import TrainingWorker, stable_hash
        assert stable_hash("1|0.5|2|3\n") == stable_hash("1|0.5|2|3")
        assert stable_hash("1|0.5|2|3") != stable_hash("1|0.5|2|4")

        config = ModelConfig.for_smoke_test()
        config.train.fix_initial_input = True
        config.train.validation_rate = 0.5
        rows = make_rows(40)
        counts = []
        for name, suffix in (("bare", ""), ("newline", "\n")):
            with TrainingWorker() as worker:
                worker.init(
                    WorkerProps(data_dir=str(tmp_path / name)),
                    model_config=config,
                    columns=make_columns(),
                )
                worker.load_all(row + suffix for row in rows)
                worker.finalize_load()
                counts.append(
                    (worker.training_data.record_count, worker.validation_data.record_count)
                )
        assert counts[0] == counts[1]
        assert sum(counts[0]) == 40

    def test_load_requires_init(self):
        """Rows cannot be loaded before init."""
        from distrain.training.worker import TrainingWorker
        with pytest.raises(RuntimeError):
            TrainingWorker().load("1|0|0|0")


# =============================================================================
# Ensemble Scorer Tests
# =============================================================================

class FixedOutputModel:
    """Not a ScorableModel: has no model kind."""


def make_fixed_model(kind, input_count, outputs):
    from distrain.model.base import ScorableModel

    class _Fixed(ScorableModel):
        def __init__(self):
            self.kind = kind

        @property
        def input_count(self):
            return input_count

        def compute(self, inputs):
            return np.asarray(outputs, dtype=np.float64)

    return _Fixed()


class TestEnsembleScorer:
    """Tests for combining models into integer scores."""

    def test_to_score_rounding(self):
        """Scores round half away from zero at three decimals."""
        from distrain.scoring.scorer import to_score
        assert to_score(0.0005) == 1
        assert to_score(-0.0005) == -1
        assert to_score(0.1234) == 123
        assert to_score(0.0) == 0

    def test_non_finite_outputs_score_zero(self):
        """NaN and infinite outputs give a zero score, not an error."""
        from distrain.scoring.scorer import to_score
        assert to_score(float("nan")) == 0
        assert to_score(float("inf")) == 0
        assert to_score(float("-inf")) == 0

    def test_nan_record_scores(self):
        """A pre-vectorized record holding NaN still gets a score."""
        from distrain.config import ModelConfig
        from distrain.data.dataset import DataRecord
        from distrain.model.network import FeedForwardNetwork
        from distrain.scoring.scorer import EnsembleScorer
        net = FeedForwardNetwork(3, 1, [2], ["tanh"], seed=0)
        scorer = EnsembleScorer([net], make_columns(), ModelConfig())
        record = DataRecord(
            input=np.array([np.nan, 0.0, 0.0]), ideal=np.array([1.0])
        )
        result = scorer.score_record(record)
        assert result.scores == [0]
        assert result.tag == 1

    def test_single_network_score(self):
        """One binary network with output 0.757 scores 757."""
        from distrain.config import ModelConfig
        from distrain.model.base import ModelKind
        from distrain.scoring.scorer import EnsembleScorer
        model = make_fixed_model(ModelKind.NEURAL_NETWORK, 3, [0.757, 0.1])
        scorer = EnsembleScorer([model], make_columns(), ModelConfig())
        result = scorer.score({"tag": "1", "x0": "10", "x1": "0", "state": "CA"})
        assert result.scores == [757]
        assert result.tag == 1

    def test_multi_output_network(self):
        """Non-binary networks score every output."""
        from distrain.config import ModelConfig, TrainParams
        from distrain.model.base import ModelKind
        from distrain.scoring.scorer import EnsembleScorer
        model = make_fixed_model(ModelKind.NEURAL_NETWORK, 3, [0.2, 0.7])
        config = ModelConfig(train=TrainParams(binary_classification=False))
        result = EnsembleScorer([model], make_columns(), config).score({"tag": "0"})
        assert result.scores == [200, 700]
        assert result.tag == 0

    def test_mismatched_models_skipped(self):
        """Models with the wrong input width are skipped, the rest score."""
        from distrain.config import ModelConfig
        from distrain.model.base import ModelKind
        from distrain.scoring.scorer import EnsembleScorer
        models = [
            make_fixed_model(ModelKind.SVM, 5, [0.9]),
            make_fixed_model(ModelKind.LOGISTIC_REGRESSION, 3, [0.25]),
        ]
        result = EnsembleScorer(models, make_columns(), ModelConfig()).score({"tag": "1"})
        assert result.scores == [250]

    def test_all_mismatched_is_absent(self):
        """No scorable model gives None, unlike a single zero score."""
        from distrain.config import ModelConfig
        from distrain.model.base import ModelKind
        from distrain.scoring.scorer import EnsembleScorer
        mismatched = make_fixed_model(ModelKind.NEURAL_NETWORK, 7, [0.5])
        zero = make_fixed_model(ModelKind.NEURAL_NETWORK, 3, [0.0])

        assert EnsembleScorer([mismatched], make_columns(), ModelConfig()).score({}) is None
        result = EnsembleScorer([zero], make_columns(), ModelConfig()).score({})
        assert result is not None
        assert result.scores == [0]
        assert result.tag is None

    def test_unsupported_model(self):
        """Objects without a known model kind are fatal."""
        from distrain.config import ModelConfig
        from distrain.scoring.scorer import EnsembleScorer, UnsupportedModelError
        scorer = EnsembleScorer([FixedOutputModel()], make_columns(), ModelConfig())
        with pytest.raises(UnsupportedModelError):
            scorer.score({"tag": "1"})

    def _ensemble(self):
        from distrain.model.tree import EnsembleKind, Tree, TreeEnsemble, TreeNode
        tree = Tree(nodes=[
            TreeNode(column_num=2, threshold=11.0, left=1, right=2, is_leaf=False),
            TreeNode(value=1.0),
            TreeNode(value=0.5),
        ])
        return TreeEnsemble([tree, tree, tree], EnsembleKind.RF, {2: 0, 3: 1, 4: 2}, 3)

    def test_gbdt_scoring(self):
        """GBDT sums trees with weights [1, lr, lr]."""
        from distrain.config import ModelConfig
        from distrain.scoring.scorer import EnsembleScorer
        scorer = EnsembleScorer([self._ensemble()], make_columns(), ModelConfig(algorithm="GBT"))
        result = scorer.score({"tag": "1", "x0": "10"})
        assert result.scores == [1200]

    def test_rf_scoring(self):
        """RF averages equally weighted trees."""
        from distrain.config import ModelConfig
        from distrain.scoring.scorer import EnsembleScorer
        scorer = EnsembleScorer([self._ensemble()], make_columns(), ModelConfig(algorithm="RF"))
        assert scorer.score({"tag": "0", "x0": "12"}).scores == [500]

    def test_tree_splits_follow_selected_columns(self):
        """Tree splits read the scorer's post-selection layout."""
        from distrain.config import ModelConfig
        from distrain.model.tree import EnsembleKind, Tree, TreeEnsemble, TreeNode
        from distrain.scoring.scorer import EnsembleScorer
        tree = Tree(nodes=[
            TreeNode(column_num=4, left_categories=[1], left=1, right=2, is_leaf=False),
            TreeNode(value=0.9),
            TreeNode(value=0.1),
        ])
        # Positions of the full candidate layout, not the selected one.
        ensemble = TreeEnsemble([tree, tree], EnsembleKind.GBDT, {2: 0, 3: 1, 4: 2}, 3)
        columns = make_columns(final_select=(2, 4))
        scorer = EnsembleScorer([ensemble], columns, ModelConfig(algorithm="RF"))

        assert scorer.score({"tag": "1", "x0": "12", "state": "NY"}).scores == [900]
        assert scorer.score({"tag": "0", "x0": "12", "state": "CA"}).scores == [100]

    def test_tree_algorithm_needs_ensemble(self):
        """Tree algorithms reject a non-tree first model."""
        from distrain.config import ModelConfig
        from distrain.model.base import ModelKind
        from distrain.scoring.scorer import EnsembleScorer, UnsupportedModelError
        model = make_fixed_model(ModelKind.NEURAL_NETWORK, 3, [0.5])
        with pytest.raises(UnsupportedModelError):
            EnsembleScorer([model], make_columns(), ModelConfig(algorithm="RF"))

    def test_tree_ensemble_file_round_trip(self, tmp_path):
        """A saved tree ensemble scores the same after loading."""
        from distrain.model.io import load_model, save_model
        ensemble = self._ensemble()
        save_model(ensemble, tmp_path / "trees.json")
        loaded = load_model(tmp_path / "trees.json")
        x = np.array([12.0, 0.0, 1.0])
        assert loaded.compute(x).tolist() == ensemble.compute(x).tolist()
