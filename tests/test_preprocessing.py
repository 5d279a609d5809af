import numpy as np
import numpy.testing as npt
import pytest

from methylflux.workflow.preprocessing import Preprocessor, beta_to_m, m_to_beta

PROBES = ["cg1", "cg2", "cg3"]
SAMPLES = ["s1", "s2"]


def test_beta_m_conversion():
    npt.assert_allclose(beta_to_m([0.5, 0.8, 0.2]), [0.0, 2.0, -2.0])
    npt.assert_allclose(m_to_beta([0.0, 2.0, -2.0]), [0.5, 0.8, 0.2])
    assert np.isnan(beta_to_m([np.nan]))[0]
    # offset keeps the extremes finite
    assert np.isfinite(beta_to_m([0.0, 1.0], offset=0.01)).all()
    assert np.isinf(beta_to_m([0.0, 1.0])).all()


def test_default_fits_m_values():
    values = np.array([[0.5, 0.8], [0.2, 0.5], [0.9, 0.1]])
    res = Preprocessor().fit_transform(values, PROBES, SAMPLES)

    npt.assert_allclose(res.processed, beta_to_m(values))
    npt.assert_allclose(res.beta, values)
    assert res.probes == PROBES
    assert res.samples == SAMPLES
    assert res.metadata["analysis_scale"] == "m"


def test_beta_scale_analysis():
    values = np.array([[0.5, 0.8], [0.2, 0.5], [0.9, 0.1]])
    res = Preprocessor({"analysis_scale": "beta"}).fit_transform(values, PROBES, SAMPLES)
    npt.assert_allclose(res.processed, values)


def test_m_input_converted_back():
    m = np.array([[0.0, 2.0], [-2.0, 0.0], [1.0, -1.0]])
    res = Preprocessor({"input_scale": "m", "analysis_scale": "beta"}).fit_transform(m, PROBES, SAMPLES)
    npt.assert_allclose(res.processed, m_to_beta(m))
    npt.assert_allclose(res.m_values, m)


def test_out_of_range_betas_are_clipped():
    values = np.array([[1.2, 0.5], [-0.1, 0.5], [0.3, np.nan]])
    res = Preprocessor({"analysis_scale": "beta"}).fit_transform(values, PROBES, SAMPLES)
    npt.assert_allclose(res.processed[:2], [[1.0, 0.5], [0.0, 0.5]])
    assert np.isnan(res.processed[2, 1])


def test_probe_exclusion():
    values = np.full((3, 2), 0.5)
    res = Preprocessor({"exclude_probes": ["cg2", "cg9"]}).fit_transform(values, PROBES, SAMPLES)
    assert res.probes == ["cg1", "cg3"]
    assert res.processed.shape == (2, 2)
    assert res.metadata["n_excluded_probes"] == 1


@pytest.mark.parametrize("cfg", [
    {"input_scale": "logit"},
    {"analysis_scale": "counts"},
    {"m_offset": -1},
])
def test_invalid_config(cfg):
    with pytest.raises(ValueError):
        Preprocessor(cfg)
