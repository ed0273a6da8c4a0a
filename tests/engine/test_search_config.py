import pytest

from fake_runtime import FakeParams
from genny.engine.search_config import SEARCH_OPTION_NAMES, SearchConfig


def test_runtime_parameters_cover_every_option_in_order() -> None:
    params = SearchConfig().to_runtime_parameters()
    assert list(params) == list(SEARCH_OPTION_NAMES)
    assert len(params) == 13
    assert "sampling_mode" not in params


def test_runtime_parameters_coerce_types() -> None:
    cfg = SearchConfig(top_k=3.0, min_length=2.0, temperature=1, do_sample=1, sampling_mode="both")  # type: ignore[arg-type]
    params = cfg.to_runtime_parameters()
    assert params["top_k"] == 3 and type(params["top_k"]) is int
    assert params["min_length"] == 2 and type(params["min_length"]) is int
    assert type(params["temperature"]) is float
    assert params["do_sample"] is True
    assert params["early_stopping"] is True


def test_apply_to_sets_each_option_once() -> None:
    params = FakeParams()
    cfg = SearchConfig(top_p=0.5, top_k=7, max_length=64, do_sample=True, sampling_mode="both")
    cfg.apply_to(params)

    assert params.option_calls == list(SEARCH_OPTION_NAMES)
    assert params.options["top_p"] == 0.5
    assert params.options["top_k"] == 7
    assert params.options["max_length"] == 64
    assert params.options["do_sample"] is True


def test_apply_to_falls_back_to_bulk_setter() -> None:
    class BulkOnlyParams:
        def __init__(self) -> None:
            self.options = None

        def set_search_options(self, **options) -> None:
            self.options = options

    params = BulkOnlyParams()
    SearchConfig(temperature=0.7).apply_to(params)
    assert params.options is not None
    assert set(params.options) == set(SEARCH_OPTION_NAMES)
    assert params.options["temperature"] == 0.7


@pytest.mark.parametrize(
    ("do_sample", "mode", "expected"),
    [
        (False, "greedy", False),
        (False, "top_k", False),
        (True, "greedy", False),
        (True, "top_k", True),
        (True, "top_p", True),
        (True, "both", True),
    ],
)
def test_uses_sampling(do_sample: bool, mode: str, expected: bool) -> None:
    assert SearchConfig(do_sample=do_sample, sampling_mode=mode).uses_sampling is expected  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("do_sample", "mode", "expected"),
    [
        (True, "greedy", False),
        (False, "both", False),
        (True, "both", True),
    ],
)
def test_runtime_do_sample_is_the_effective_policy(do_sample: bool, mode: str, expected: bool) -> None:
    params = SearchConfig(do_sample=do_sample, sampling_mode=mode).to_runtime_parameters()  # type: ignore[arg-type]
    assert params["do_sample"] is expected


def test_top_k_mode_disables_nucleus_filter() -> None:
    params = SearchConfig(do_sample=True, sampling_mode="top_k", top_k=7, top_p=0.5).to_runtime_parameters()
    assert params["top_k"] == 7
    assert params["top_p"] == 1.0


def test_top_p_mode_disables_top_k_filter() -> None:
    params = SearchConfig(do_sample=True, sampling_mode="top_p", top_k=7, top_p=0.5).to_runtime_parameters()
    assert params["top_k"] == 0
    assert params["top_p"] == 0.5


def test_both_mode_keeps_both_filters() -> None:
    params = SearchConfig(do_sample=True, sampling_mode="both", top_k=7, top_p=0.5).to_runtime_parameters()
    assert (params["top_k"], params["top_p"]) == (7, 0.5)


def test_merged_coerces_string_values() -> None:
    cfg = SearchConfig().merged(
        {"top_k": "10", "temperature": "0.25", "do_sample": "yes", "sampling_mode": "Top-K"}
    )
    assert cfg.top_k == 10
    assert cfg.temperature == 0.25
    assert cfg.do_sample is True
    assert cfg.sampling_mode == "top_k"


def test_merged_none_returns_same_config() -> None:
    cfg = SearchConfig(top_k=5)
    assert cfg.merged(None) is cfg


def test_merged_leaves_receiver_unchanged() -> None:
    cfg = SearchConfig()
    cfg.merged({"max_length": 32})
    assert cfg.max_length == 1024


@pytest.mark.parametrize(
    "override",
    [
        {"nope": 1},
        {"top_k": "many"},
        {"do_sample": "maybe"},
        {"top_k": True},
        {"top_p": 1.5},
        {"temperature": 0},
        {"repetition_penalty": 0.5},
        {"min_length": 10, "max_length": 5},
        {"num_return_sequences": 0},
        {"sampling_mode": "beam"},
    ],
)
def test_merged_rejects_invalid_values(override) -> None:
    with pytest.raises(ValueError):
        SearchConfig().merged(override)


def test_merged_rejects_non_mapping() -> None:
    with pytest.raises(ValueError):
        SearchConfig().merged(["top_k", 1])


def test_defaults_validate() -> None:
    SearchConfig().validate()
