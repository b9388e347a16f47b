import numpy as np
import pytest
import scipy.sparse

import frameboost as fb
from frameboost import testing as tm
from frameboost.core import InvalidColumnRoleError
from frameboost.data import SPARSE_FILL_RATIO, encode, partition_rows

pytestmark = pytest.mark.skipif(**tm.no_sklearn())

PROSTATE_IGNORED = ["ID", "DPROS", "DCAPS", "PSA", "VOL", "RACE", "CAPSULE"]


def train(frame: fb.Frame, **kwargs) -> fb.Model:
    kwargs.setdefault("ntrees", 2)
    manager = fb.ModelArtifactManager()
    return fb.train_model(fb.ParameterSet(**kwargs), frame, manager=manager)


class TestSparsityDetection:
    def test_categorical_gleason_is_sparse(self) -> None:
        frame = tm.get_prostate()
        frame.replace("GLEASON", frame["GLEASON"].to_categorical())
        model = train(
            frame, response_column="AGE", ignored_columns=PROSTATE_IGNORED
        )
        assert model.output.sparse
        assert model.output.info.fill_ratio < SPARSE_FILL_RATIO

    def test_numeric_gleason_is_dense(self) -> None:
        frame = tm.get_prostate()
        model = train(
            frame, response_column="AGE", ignored_columns=PROSTATE_IGNORED
        )
        assert not model.output.sparse

    def test_enum_only(self) -> None:
        sparse_frame = tm.generate_enum_only(2, 10, 10, 0)
        dense_frame = tm.generate_enum_only(2, 10, 2, 0)
        sparse_model = train(sparse_frame, response_column="C1", seed=42, ntrees=1)
        assert sparse_model.output.sparse
        dense_model = train(dense_frame, response_column="C1", seed=42, ntrees=1)
        assert not dense_model.output.sparse

    @pytest.mark.parametrize("dmatrix_type", ["dense", "sparse"])
    def test_forced(self, dmatrix_type: str) -> None:
        frame = tm.get_prostate()
        frame.replace("GLEASON", frame["GLEASON"].to_categorical())
        model = train(
            frame,
            response_column="AGE",
            ignored_columns=PROSTATE_IGNORED,
            dmatrix_type=dmatrix_type,
        )
        assert model.output.sparse == (dmatrix_type == "sparse")


class TestMatrixBuilder:
    def builder(self, **kwargs) -> fb.MatrixBuilder:
        return fb.MatrixBuilder(fb.resolve(fb.ParameterSet(**kwargs)))

    def test_layout(self) -> None:
        frame = fb.Frame.from_dict(
            {
                "x": [1.0, 2.0, 3.0, 4.0],
                "c": ["a", "b", None, "a"],
                "const": [1.0, 1.0, 1.0, 1.0],
                "y": [0.5, 1.5, 2.5, 3.5],
            }
        )
        info = self.builder(response_column="y").prepare(frame)
        assert info.task == fb.params.Task.regression
        assert info.layout.column_names == ["x", "c"]
        assert info.layout.feature_names == ["x", "c.a", "c.b"]
        assert info.layout.num_features == 3

        kept = self.builder(response_column="y", ignore_const_cols=False).prepare(frame)
        assert "const" in kept.layout.column_names

    def test_dense_encoding(self) -> None:
        frame = fb.Frame.from_dict(
            {"x": [1.0, 0.0, np.nan], "c": ["a", "b", None], "y": [1.0, 2.0, 3.0]}
        )
        info = self.builder(response_column="y", dmatrix_type="dense").prepare(frame)
        data = encode(frame, info.layout, np.arange(3), sparse=False)
        assert data.dtype == np.float32
        np.testing.assert_array_equal(
            data,
            [[1.0, 1.0, 0.0], [0.0, 0.0, 1.0], [np.nan, np.nan, np.nan]],
        )

    def test_sparse_encoding(self) -> None:
        frame = fb.Frame.from_dict(
            {"x": [1.0, 0.0, np.nan], "c": ["a", "b", None], "y": [1.0, 2.0, 3.0]}
        )
        info = self.builder(response_column="y", dmatrix_type="sparse").prepare(frame)
        data = encode(frame, info.layout, np.arange(3), sparse=True)
        assert scipy.sparse.issparse(data)
        assert data.shape == (3, 3)
        # zeros and missing values are absent
        assert data.nnz == 3
        np.testing.assert_array_equal(
            data.toarray(), [[1.0, 1.0, 0.0], [0.0, 0.0, 1.0], [0.0, 0.0, 0.0]]
        )

    def test_levels_by_name(self) -> None:
        train_frame = fb.Frame.from_dict({"c": ["a", "b", "a"], "y": [1.0, 2.0, 3.0]})
        info = self.builder(response_column="y").prepare(train_frame)
        # same levels, different domain order, plus an unseen level
        test_frame = fb.Frame.from_dict(
            {"c": fb.Vec.from_levels(["b", "a", "z"], domain=["z", "b", "a"])}
        )
        data = encode(test_frame, info.layout, np.arange(3), sparse=False)
        np.testing.assert_array_equal(
            data, [[0.0, 1.0], [1.0, 0.0], [np.nan, np.nan]]
        )

    def test_missing_column(self) -> None:
        frame = tm.get_prostate()
        builder = self.builder(response_column="AGE", ignored_columns=["ID"])
        info = builder.prepare(frame)
        frame.remove("PSA")
        with pytest.warns(UserWarning, match="PSA"):
            matrix = builder.build(frame, info=info)
        assert matrix.num_col() == info.layout.num_features

    def test_build(self) -> None:
        frame = tm.get_prostate()
        builder = self.builder(response_column="AGE", weights_column="CAPSULE")
        matrix = builder.build(frame, rows=np.arange(10))
        assert matrix.num_row() == 10
        assert "CAPSULE" not in matrix.layout.column_names
        np.testing.assert_array_equal(matrix.label, frame["AGE"].values[:10])
        np.testing.assert_array_equal(matrix.weight, frame["CAPSULE"].values[:10])

        sliced = matrix.slice([1, 3])
        assert sliced.num_row() == 2
        np.testing.assert_array_equal(sliced.rows, [1, 3])

    @pytest.mark.parametrize("sparse", [False, True])
    def test_sharded_encoding(self, sparse: bool) -> None:
        frame = tm.get_prostate()
        frame.replace("GLEASON", frame["GLEASON"].to_categorical())
        builder = fb.MatrixBuilder(
            fb.resolve(fb.ParameterSet(response_column="AGE")), chunk_rows=37
        )
        info = builder.prepare(frame)
        rindex = np.arange(frame.nrows)
        info = fb.DataInfo(
            response=info.response, task=info.task, layout=info.layout, sparse=sparse
        )
        # pylint: disable=protected-access
        sharded = builder._encode_sharded(frame, info, rindex)
        whole = encode(frame, info.layout, rindex, sparse)
        if sparse:
            sharded, whole = sharded.toarray(), whole.toarray()
        np.testing.assert_array_equal(sharded, whole)

    def test_encoders_shared_by_shards(self, monkeypatch: pytest.MonkeyPatch) -> None:
        frame = tm.get_prostate()
        frame.replace("GLEASON", frame["GLEASON"].to_categorical())
        builder = fb.MatrixBuilder(
            fb.resolve(fb.ParameterSet(response_column="AGE")), chunk_rows=37
        )
        info = builder.prepare(frame)
        assert len(partition_rows(frame.nrows, 37)) > 1

        created = []
        encoder = fb.data._ColumnEncoder  # pylint: disable=protected-access

        class CountingEncoder(encoder):
            def __init__(self, spec, vec) -> None:
                created.append(spec.name)
                super().__init__(spec, vec)

        monkeypatch.setattr(fb.data, "_ColumnEncoder", CountingEncoder)
        matrix = builder.build(frame, info=info, with_label=False)
        assert matrix.num_row() == frame.nrows
        assert created == info.layout.column_names

    def test_partition_rows(self) -> None:
        assert partition_rows(10, 4) == [(0, 4), (4, 8), (8, 10)]
        assert partition_rows(0, 4) == []
        with pytest.raises(ValueError):
            partition_rows(10, 0)


class TestColumnRoles:
    def prepare(self, frame: fb.Frame, **kwargs) -> fb.DataInfo:
        return fb.MatrixBuilder(fb.resolve(fb.ParameterSet(**kwargs))).prepare(frame)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {},
            {"response_column": "missing"},
            {"response_column": "AGE", "ignored_columns": ["AGE"]},
            {"response_column": "AGE", "ignored_columns": ["nope"]},
            {"response_column": "AGE", "weights_column": "AGE"},
            {"response_column": "AGE", "weights_column": "nope"},
        ],
    )
    def test_invalid_roles(self, kwargs: dict) -> None:
        with pytest.raises(InvalidColumnRoleError):
            self.prepare(tm.get_prostate(), **kwargs)

    def test_invalid_weights(self) -> None:
        frame = tm.get_prostate()
        frame.add("w", fb.Vec(np.where(np.arange(frame.nrows) == 0, -1.0, 1.0)))
        with pytest.raises(InvalidColumnRoleError) as e:
            self.prepare(frame, response_column="AGE", weights_column="w")
        assert e.value.field == "weights_column"

    def test_missing_response(self) -> None:
        frame = tm.get_cars()
        with pytest.raises(InvalidColumnRoleError) as e:
            self.prepare(frame, response_column="economy (mpg)")
        assert "missing values" in str(e.value)

    def test_single_level_response(self) -> None:
        frame = fb.Frame.from_dict({"x": [1.0, 2.0], "y": fb.Vec([0.0, 0.0], ["a"])})
        with pytest.raises(InvalidColumnRoleError):
            self.prepare(frame, response_column="y")

    def test_task(self) -> None:
        frame = tm.get_prostate()
        assert self.prepare(frame, response_column="AGE").task == "regression"
        frame.replace("CAPSULE", frame["CAPSULE"].to_categorical())
        info = self.prepare(frame, response_column="CAPSULE")
        assert info.task == "binomial"
        assert info.response_domain == ("0", "1")
        iris = tm.get_iris()
        info = self.prepare(iris, response_column="class")
        assert info.task == "multinomial"
        assert info.num_class == 3
