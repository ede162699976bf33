import numpy as np
import pytest

from curriculum_chess.generate import PuzzleGenerator, generate_many


def test_puzzle_widths_and_difficulty():
    gen = PuzzleGenerator(10, input_size=64, output_size=8, seed=0)
    p = gen.create_puzzle(3)
    assert p.input_size == 64
    assert p.target_size == 8
    assert p.difficulty == pytest.approx(3 / 9)
    assert np.all(np.abs(p.target) < 0.9)
    assert gen.puzzle_count == 1


def test_higher_levels_occupy_more_squares():
    gen = PuzzleGenerator(10, input_size=64, seed=1)
    counts = [int(np.count_nonzero(gen.create_puzzle(level).input)) for level in range(10)]
    assert counts[0] == 1
    assert counts == sorted(counts)
    assert counts[-1] == 64 // 3


def test_level_is_clamped():
    gen = PuzzleGenerator(4, seed=0)
    assert gen.create_puzzle(99).difficulty == 1.0
    assert gen.create_puzzle(-5).difficulty == 0.0


@pytest.mark.parametrize(
    "difficulty,expected_level",
    [(0.0, 0), (0.5, 4), (0.99, 8), (1.0, 9), (3.0, 9), (-1.0, 0)],
)
def test_progressive_puzzle_maps_difficulty_to_level(difficulty, expected_level):
    gen = PuzzleGenerator(10, seed=0)
    assert gen.create_progressive_puzzle(difficulty).difficulty == pytest.approx(expected_level / 9)


def test_single_level_generator():
    gen = PuzzleGenerator(1, seed=0)
    assert gen.create_progressive_puzzle(0.7).difficulty == 0.0


def test_generation_is_seeded():
    a = generate_many(n=5, seed=7, num_levels=3, input_size=16, output_size=4)
    b = generate_many(n=5, seed=7, num_levels=3, input_size=16, output_size=4)
    assert [lv for lv, _ in a] == [0, 1, 2, 0, 1]
    for (_, x), (_, y) in zip(a, b):
        np.testing.assert_array_equal(x.input, y.input)
        np.testing.assert_array_equal(x.target, y.target)


def test_invalid_generator_arguments():
    with pytest.raises(ValueError):
        PuzzleGenerator(0)
    with pytest.raises(ValueError):
        PuzzleGenerator(3, input_size=0)
