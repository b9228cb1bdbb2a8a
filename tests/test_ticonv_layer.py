import logging

import numpy as np
import pytest

from ticonv import ConfigurationError, Faculty, TIConv2d


SCENARIO_TRANSFORMS = ["identity", {"scale": 1.15}, {"rotation": 5}]
GRADIENT_TRANSFORMS = ["identity", {"scale": 2.0}, {"scale": 0.5}, {"rotation": 45}]


def _with_interp(transforms, interp):
    out = []
    for t in transforms:
        t = {} if t == "identity" else dict(t)
        t["interp"] = interp
        out.append(t)
    return out


def _constant_layer(faculty, **overrides):
    params = {
        "num_output": 4,
        "kernel_size": 3,
        "stride": 2,
        "weight_filler": {"type": "constant", "value": 1.0},
        "bias_filler": {"type": "constant", "value": 0.1},
        "transformations": SCENARIO_TRANSFORMS,
    }
    params.update(overrides)
    return TIConv2d(params, faculty=faculty)


# ---------------------------------------------------------------------------
# setup / shapes
# ---------------------------------------------------------------------------


def test_setup_output_shape():
    layer = TIConv2d(
        {
            "num_output": 4,
            "kernel_size": 3,
            "stride": 2,
            "transformations": ["identity", {"scale": 1.15}, {"scale": 0.5}],
        }
    )
    assert layer.setup((2, 3, 12, 10)) == (2, 4, 5, 4)
    assert layer.W.shape == (4, 3, 3, 3)
    assert layer.b.shape == (4,)
    assert layer.get_input_shape() == (None, 3, None, None)


def test_setting_group_does_not_change_shape():
    layer = TIConv2d(
        {
            "num_output": 3,
            "kernel_size": 3,
            "stride": 2,
            "groups": 3,
            "transformations": ["identity", {"scale": 1.15}, {"scale": 0.5}],
        }
    )
    assert layer.setup((2, 3, 12, 10)) == (2, 3, 5, 4)
    assert layer.W.shape == (3, 1, 3, 3)


@pytest.mark.parametrize("num_transforms", [1, 2, 4, 7])
@pytest.mark.parametrize("kernel,stride,size", [(3, 1, 9), (3, 2, 12), (5, 3, 17), (2, 2, 8)])
def test_shape_is_independent_of_transform_count(num_transforms, kernel, stride, size, faculty):
    transforms = ["identity"] + [{"rotation": 15 * i} for i in range(1, num_transforms)]
    layer = TIConv2d(
        {"num_output": 4, "kernel_size": kernel, "stride": stride, "groups": 2, "transformations": transforms},
        faculty=faculty,
    )
    expected = (size - kernel) // stride + 1
    assert layer.setup((1, 2, size, size + 1)) == (1, 4, expected, (size + 1 - kernel) // stride + 1)
    out = layer.forward(np.random.default_rng(0).standard_normal((1, 2, size, size + 1)))
    assert out.shape == (1, 4, expected, (size + 1 - kernel) // stride + 1)


def test_padding_extends_the_output():
    layer = TIConv2d({"num_output": 2, "kernel_size": 3, "padding": 1})
    assert layer.setup((1, 1, 5, 5)) == (1, 2, 5, 5)


def test_no_bias_term():
    layer = TIConv2d({"num_output": 2, "kernel_size": 3, "bias_term": False})
    layer.setup((1, 1, 5, 5))
    assert layer.b is None
    assert len(layer.parameters()) == 1


@pytest.mark.parametrize(
    "params,input_shape",
    [
        ({"num_output": 2, "kernel_size": 5}, (1, 1, 4, 8)),
        ({"num_output": 2, "kernel_size": 3, "groups": 2}, (1, 3, 8, 8)),
        ({"num_output": 2, "kernel_size": 3}, (1, 8, 8)),
    ],
)
def test_setup_rejects_incompatible_shapes(params, input_shape):
    layer = TIConv2d(params)
    with pytest.raises(ConfigurationError):
        layer.setup(input_shape)


def test_invalid_transform_fails_before_setup():
    with pytest.raises(ConfigurationError):
        TIConv2d({"num_output": 2, "transformations": ["identity", {"scale": -1.0}]})


# ---------------------------------------------------------------------------
# concrete scenarios
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("interp", ["nearest", "bilinear"])
def test_simple_ti_convolution(interp, faculty):
    layer = _constant_layer(faculty, transformations=_with_interp(SCENARIO_TRANSFORMS, interp))
    layer.setup((2, 3, 6, 5))
    out = layer.forward(np.ones((2, 3, 6, 5)))
    # 3 channels x 9 taps x weight 1, plus bias 0.1
    assert out.shape == (2, 4, 2, 2)
    assert np.allclose(out, 27.1, atol=1e-4)


def test_simple_ti_convolution_group(faculty):
    layer = _constant_layer(faculty, num_output=3, groups=3)
    layer.setup((2, 3, 6, 5))
    x = np.ones((2, 3, 6, 5)) * np.arange(3).reshape(1, 3, 1, 1)
    out = layer.forward(x)
    expected = 9 * np.arange(3).reshape(1, 3, 1, 1) + 0.1
    assert np.allclose(out, np.broadcast_to(expected, out.shape), atol=1e-4)


def test_scenario_is_unchanged_when_switching_faculty(torch_faculty):
    layer = _constant_layer(Faculty.NUMPY)
    layer.setup((2, 3, 6, 5))
    x = np.ones((2, 3, 6, 5))
    host = layer.forward(x)
    layer.set_faculty(torch_faculty)
    assert layer.faculty is Faculty.TORCH
    device = layer.forward(x)
    assert np.allclose(host, 27.1, atol=1e-4)
    assert np.allclose(device, 27.1, atol=1e-4)


# ---------------------------------------------------------------------------
# invariance / selection properties
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("num_variants", [1, 2, 3, 5])
def test_identical_variants_leave_output_unchanged(num_variants, faculty):
    transforms = ["identity", {"rotation": 30}, {"rotation": 45}, {"scale": 1.15}, {"rotation": -70}]
    common = {
        "num_output": 3,
        "kernel_size": 3,
        "weight_filler": {"type": "constant", "value": 0.3},
        "bias_filler": {"type": "gaussian", "std": 1.0},
        "seed": 7,
        "dtype": "float64",
    }
    ti = TIConv2d(dict(common, transformations=transforms[:num_variants]), faculty=faculty)
    plain = TIConv2d(dict(common, transformations=["identity"]), faculty=faculty)
    ti.setup((2, 2, 7, 6))
    plain.setup((2, 2, 7, 6))
    banks = ti.transformed_filters()
    assert len(banks) == num_variants
    for bank in banks:
        assert np.array_equal(bank, ti.W)
    x = np.random.default_rng(1).standard_normal((2, 2, 7, 6))
    out, ctx = ti.forward(x, return_context=True)
    assert np.allclose(out, plain.forward(x))
    assert np.all(ctx.backend.to_numpy(ctx.argmax) == 0)


def test_output_is_max_over_single_variant_layers():
    transforms = ["identity", {"scale": 2.0}, {"rotation": 45, "interp": "bilinear"}]
    common = {"num_output": 3, "kernel_size": 3, "bias_filler": "gaussian", "dtype": "float64"}
    ti = TIConv2d(dict(common, transformations=transforms, seed=3))
    ti.setup((1, 2, 8, 8))
    x = np.random.default_rng(2).standard_normal((1, 2, 8, 8))
    out, ctx = ti.forward(x, return_context=True)

    per_variant = []
    for t in transforms:
        single = TIConv2d(dict(common, transformations=[t], seed=3))
        single.setup((1, 2, 8, 8))
        per_variant.append(single.forward(x))
    stack = np.stack(per_variant)
    assert np.allclose(out, stack.max(axis=0))
    argmax = ctx.backend.to_numpy(ctx.argmax)
    assert np.allclose(np.take_along_axis(stack, argmax[None], axis=0)[0], out)


# ---------------------------------------------------------------------------
# gradients
# ---------------------------------------------------------------------------


def _gradient_layer(transforms, *, num_output=3, groups=1, faculty=Faculty.NUMPY, seed=1701):
    layer = TIConv2d(
        {
            "num_output": num_output,
            "kernel_size": 3,
            "stride": 1,
            "groups": groups,
            "weight_filler": "gaussian",
            "bias_filler": "gaussian",
            "transformations": transforms,
            "dtype": "float64",
            "seed": seed,
        },
        faculty=faculty,
    )
    layer.setup((2, 2, 7, 7))
    return layer


def _check_gradients(layer, numgrad, check_input=True):
    rng = np.random.default_rng(0)
    x = rng.standard_normal((2, 2, 7, 7))
    out = layer.forward(x)
    proj = rng.standard_normal(out.shape)

    layer.zero_grad()
    layer.forward(x)
    dx = layer.backward(proj)

    def loss():
        return float((layer.forward(x) * proj).sum())

    num_gW = numgrad(loss, layer.W)
    num_gb = numgrad(loss, layer.b)
    assert np.allclose(layer.gW, num_gW, rtol=1e-4, atol=1e-6)
    assert np.allclose(layer.gb, num_gb, rtol=1e-4, atol=1e-6)
    rel = np.abs(layer.gW - num_gW).max() / max(np.abs(num_gW).max(), 1e-12)
    assert rel < 1e-2
    if check_input:
        num_dx = numgrad(loss, x)
        assert np.allclose(dx, num_dx, rtol=1e-4, atol=1e-6)


def test_gradient(numgrad):
    _check_gradients(_gradient_layer(GRADIENT_TRANSFORMS), numgrad)


def test_gradient_bilinear(numgrad):
    _check_gradients(_gradient_layer(_with_interp(GRADIENT_TRANSFORMS, "bilinear")), numgrad)


def test_gradient_group(numgrad):
    _check_gradients(_gradient_layer(GRADIENT_TRANSFORMS, num_output=2, groups=2), numgrad)


def test_gradient_group_bilinear(numgrad):
    layer = _gradient_layer(_with_interp(GRADIENT_TRANSFORMS, "bilinear"), num_output=2, groups=2)
    _check_gradients(layer, numgrad)


@pytest.mark.slow
@pytest.mark.parametrize("interp", ["nearest", "bilinear"])
def test_gradient_torch_path(interp, numgrad, torch_faculty):
    layer = _gradient_layer(_with_interp(GRADIENT_TRANSFORMS, interp), faculty=torch_faculty)
    _check_gradients(layer, numgrad)


def test_backward_matches_between_faculties(torch_faculty):
    transforms = _with_interp(GRADIENT_TRANSFORMS, "bilinear")
    host = _gradient_layer(transforms)
    device = _gradient_layer(transforms, faculty=torch_faculty)
    assert np.array_equal(host.W, device.W)
    rng = np.random.default_rng(9)
    x = rng.standard_normal((2, 2, 7, 7))
    out_h = host.forward(x)
    out_d = device.forward(x)
    assert np.allclose(out_h, out_d)
    g = rng.standard_normal(out_h.shape)
    assert np.allclose(host.backward(g), device.backward(g))
    assert np.allclose(host.gW, device.gW)
    assert np.allclose(host.gb, device.gb)


def test_gradients_accumulate_until_zero_grad():
    layer = _gradient_layer(GRADIENT_TRANSFORMS)
    x = np.random.default_rng(4).standard_normal((2, 2, 7, 7))
    g = np.ones(layer.forward(x).shape)
    layer.backward(g)
    first = layer.gW.copy()
    layer.forward(x)
    layer.backward(g)
    assert np.allclose(layer.gW, 2 * first)
    layer.zero_grad()
    assert not layer.gW.any()
    assert not layer.gb.any()


def test_bias_gradient_sums_over_all_winners():
    layer = _gradient_layer(GRADIENT_TRANSFORMS)
    x = np.random.default_rng(5).standard_normal((2, 2, 7, 7))
    g = np.random.default_rng(6).standard_normal(layer.forward(x).shape)
    layer.backward(g)
    assert np.allclose(layer.gb, g.sum(axis=(0, 2, 3)))


# ---------------------------------------------------------------------------
# context handling / concurrency
# ---------------------------------------------------------------------------


def test_explicit_contexts_allow_interleaved_batches():
    layer = _gradient_layer(GRADIENT_TRANSFORMS)
    rng = np.random.default_rng(8)
    xa = rng.standard_normal((2, 2, 7, 7))
    xb = rng.standard_normal((2, 2, 7, 7))
    out_a, ctx_a = layer.forward(xa, return_context=True)
    out_b, ctx_b = layer.forward(xb, return_context=True)
    ga = rng.standard_normal(out_a.shape)
    gb = rng.standard_normal(out_b.shape)
    dx_b = layer.backward(gb, ctx_b)
    dx_a = layer.backward(ga, ctx_a)

    ref = _gradient_layer(GRADIENT_TRANSFORMS)
    ref.forward(xa)
    assert np.allclose(ref.backward(ga), dx_a)
    ref.forward(xb)
    assert np.allclose(ref.backward(gb), dx_b)
    assert np.allclose(ref.gW, layer.gW)


def test_context_survives_in_place_weight_updates():
    layer = _gradient_layer(GRADIENT_TRANSFORMS)
    x = np.random.default_rng(10).standard_normal((2, 2, 7, 7))
    g = np.ones(layer.forward(x).shape)
    ref = layer.backward(g)
    layer.zero_grad()
    layer.forward(x)
    layer.W *= 3.0
    assert np.allclose(layer.backward(g), ref)


def test_backward_before_forward_raises():
    layer = _gradient_layer(GRADIENT_TRANSFORMS)
    with pytest.raises(RuntimeError):
        layer.backward(np.zeros((2, 3, 5, 5)))


def test_implicit_context_is_consumed_by_backward():
    layer = _gradient_layer(GRADIENT_TRANSFORMS)
    x = np.zeros((2, 2, 7, 7))
    g = np.zeros(layer.forward(x).shape)
    layer.backward(g)
    with pytest.raises(RuntimeError):
        layer.backward(g)


def test_forward_before_setup_raises():
    layer = TIConv2d({"num_output": 2})
    with pytest.raises(RuntimeError):
        layer.forward(np.zeros((1, 1, 5, 5)))


def test_forward_rejects_wrong_channels_and_gradient_shape():
    layer = _gradient_layer(GRADIENT_TRANSFORMS)
    with pytest.raises(ValueError):
        layer.forward(np.zeros((2, 3, 7, 7)))
    with pytest.raises(ValueError):
        layer.forward(np.zeros((2, 7, 7)))
    layer.forward(np.zeros((2, 2, 7, 7)))
    with pytest.raises(ValueError):
        layer.backward(np.zeros((2, 3, 4, 4)))


def test_thread_pool_matches_serial(faculty):
    transforms = _with_interp(GRADIENT_TRANSFORMS, "bilinear")
    serial = _gradient_layer(transforms, faculty=faculty)
    threaded = TIConv2d(
        dict(
            num_output=3,
            kernel_size=3,
            weight_filler="gaussian",
            bias_filler="gaussian",
            transformations=transforms,
            dtype="float64",
            seed=1701,
            max_workers=4,
        ),
        faculty=faculty,
    )
    threaded.setup((2, 2, 7, 7))
    with threaded:
        x = np.random.default_rng(11).standard_normal((2, 2, 7, 7))
        out_s = serial.forward(x)
        out_t = threaded.forward(x)
        assert np.allclose(out_s, out_t)
        g = np.random.default_rng(12).standard_normal(out_s.shape)
        assert np.allclose(serial.backward(g), threaded.backward(g))
        assert np.allclose(serial.gW, threaded.gW)


def test_worker_pool_is_created_on_demand_and_released():
    layer = TIConv2d({"num_output": 2, "kernel_size": 3, "max_workers": 2})
    layer.setup((1, 1, 5, 5))
    assert layer._executor is None
    with layer:
        layer.forward(np.ones((1, 1, 5, 5)))
        assert layer._executor is not None
    assert layer._executor is None
    # a closed layer starts a fresh pool on the next call
    layer.forward(np.ones((1, 1, 5, 5)))
    assert layer._executor is not None
    layer.close()

    inline = TIConv2d({"num_output": 2, "kernel_size": 3})
    inline.setup((1, 1, 5, 5))
    inline.forward(np.ones((1, 1, 5, 5)))
    assert inline._executor is None


def test_empty_batch_backward_leaves_gradients_finite(faculty):
    layer = _gradient_layer(GRADIENT_TRANSFORMS, faculty=faculty)
    out = layer.forward(np.zeros((0, 2, 7, 7)))
    assert out.shape == (0, 3, 5, 5)
    dx = layer.backward(np.zeros(out.shape))
    assert dx.shape == (0, 2, 7, 7)
    assert np.array_equal(layer.gW, np.zeros_like(layer.W))
    assert np.array_equal(layer.gb, np.zeros(3))


def test_forward_logs_variant_wins(caplog):
    layer = _gradient_layer(GRADIENT_TRANSFORMS)
    with caplog.at_level(logging.DEBUG, logger="ticonv"):
        layer.forward(np.random.default_rng(13).standard_normal((2, 2, 7, 7)))
    messages = [r.message for r in caplog.records]
    assert any("wins per variant" in m for m in messages)
    assert any("TIConv2d.forward [numpy]" in m for m in messages)
