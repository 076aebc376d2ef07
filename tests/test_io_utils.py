"""Tests for file discovery, parameter configs and result export."""

import json

import numpy as np
import pandas as pd
import pytest

from parametric_seg.io_utils import (
    FileDiscovery,
    ResultExporter,
    get_parameters_for_plugin,
    load_parameter_config,
)
from parametric_seg.pipeline import LayerSpec, PipelineGraph, PipelineSpec, run_batch


def _square_contour(images, params):
    return np.array([[1.0, 1.0], [4.0, 1.0], [4.0, 4.0], [1.0, 4.0], [1.0, 1.0]])


def _boom(images, params):
    raise RuntimeError("boom")


class TestLoadParameterConfig:
    def test_csv(self, tmp_path):
        path = tmp_path / "params.csv"
        path.write_text(
            "plugin,Threshold,Radius\n"
            "default,,2\n"
            "intensity_threshold,25,\n"
        )
        config = load_parameter_config(path)
        assert config['default'] == {'Radius': 2}
        assert config['intensity_threshold'] == {'Threshold': 25}

    def test_csv_value_types(self, tmp_path):
        path = tmp_path / "params.csv"
        path.write_text("plugin,Threshold,Sigma,Invert,Mode\nblob_hull,12,1.5,Yes,fast\n")
        params = load_parameter_config(path)['blob_hull']
        assert params == {'Threshold': 12, 'Sigma': 1.5, 'Invert': True, 'Mode': 'fast'}
        assert isinstance(params['Threshold'], int)

    def test_csv_requires_plugin_column(self, tmp_path):
        path = tmp_path / "params.csv"
        path.write_text("date,Threshold\n2024-01-01,5\n")
        with pytest.raises(ValueError):
            load_parameter_config(path)

    def test_json(self, tmp_path):
        path = tmp_path / "params.json"
        path.write_text(json.dumps({'blob_hull': {'Sigma': 3}}))
        assert load_parameter_config(path) == {'blob_hull': {'Sigma': 3}}

    def test_yaml(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text("default:\n  Shrink Factor: 0.7\nblob_hull:\n  Sigma: 1.5\n")
        config = load_parameter_config(path)
        assert config['blob_hull'] == {'Sigma': 1.5}
        assert config['default'] == {'Shrink Factor': 0.7}

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "params.ini"
        path.write_text("")
        with pytest.raises(ValueError):
            load_parameter_config(path)


class TestGetParametersForPlugin:
    def test_plugin_overrides_default(self):
        config = {'default': {'Radius': 2, 'Threshold': 10}, 'intensity_threshold': {'Threshold': 25}}
        params = get_parameters_for_plugin(config, 'intensity_threshold')
        assert params == {'Radius': 2, 'Threshold': 25}

    def test_missing_plugin_uses_default(self):
        assert get_parameters_for_plugin({'default': {'Radius': 2}}, 'blob_hull') == {'Radius': 2}

    def test_filters_unknown_names(self):
        config = {'default': {'Radius': 2, 'Sigma': 1}}
        params = get_parameters_for_plugin(config, 'intensity_threshold', ['Threshold', 'Radius'])
        assert params == {'Radius': 2}


class TestFileDiscovery:
    def test_finds_images(self, tmp_path):
        (tmp_path / "b.tif").write_bytes(b"")
        (tmp_path / "a.TIF").write_bytes(b"")
        (tmp_path / "notes.txt").write_text("x")
        files = FileDiscovery.find_images(tmp_path)
        assert [f.name for f in files] == ["a.TIF", "b.tif"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FileDiscovery.find_images(tmp_path / "missing")


class TestResultExporter:
    def test_exports_points_and_summary(self, tmp_path):
        ok_spec = PipelineSpec(layers=(LayerSpec('contour', _square_contour),), parameters=())
        bad_spec = PipelineSpec(layers=(LayerSpec('bad', _boom),), parameters=())
        results = {
            'good': PipelineGraph(ok_spec).run(np.zeros((6, 6))),
            'broken': PipelineGraph(bad_spec).run(np.zeros((6, 6))),
        }

        ResultExporter.export_results(results, tmp_path, plugin='custom')

        points = pd.read_csv(tmp_path / 'custom' / 'good.csv')
        assert list(points.columns) == ['X', 'Y']
        assert len(points) == 5

        summary = pd.read_csv(tmp_path / 'custom' / 'summary.csv')
        assert set(summary['ImageId']) == {'good', 'broken'}
        broken = summary[summary['ImageId'] == 'broken'].iloc[0]
        assert broken['Status'] == 'failed'
        assert broken['FailedLayer'] == 1
        assert not (tmp_path / 'custom' / 'broken.csv').exists()

    def test_load_failure_in_summary(self, tmp_path):
        def _unreadable():
            raise OSError("cannot read")

        spec = PipelineSpec(layers=(LayerSpec('contour', _square_contour),), parameters=())
        results = run_batch({'missing': _unreadable}, spec)

        ResultExporter.export_results(results, tmp_path)

        summary = pd.read_csv(tmp_path / 'summary.csv')
        row = summary.iloc[0]
        assert row['ImageId'] == 'missing'
        assert row['Status'] == 'failed'
        assert row['FailedLayer'] == 0
        assert 'cannot read' in row['Error']
