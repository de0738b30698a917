"""FAST corners, steered BRIEF (ORB) descriptors and brute-force Hamming matching."""

from __future__ import annotations

import random
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
from PIL import Image, ImageDraw
from scipy.ndimage import maximum_filter

from visodom.features import DMatch, KeyPoint

# A descriptor is eight 32-bit words (256 bits); None marks a keypoint too close to the border.
Descriptor = Optional[tuple[int, ...]]

DEFAULT_FIRST_FILE = "./1.png"
DEFAULT_SECOND_FILE = "./2.png"
FAST_THRESHOLD = 40
HALF_PATCH_SIZE = 8
HALF_BOUNDARY = 16
DESCRIPTOR_WORDS = 8
MAX_MATCH_DISTANCE = 40

# Bresenham circle of radius 3 as (dx, dy), clockwise from the bottom.
_CIRCLE = (
    (0, 3), (1, 3), (2, 2), (3, 1), (3, 0), (3, -1), (2, -2), (1, -3),
    (0, -3), (-1, -3), (-2, -2), (-3, -1), (-3, 0), (-3, 1), (-2, 2), (-1, 3),
)
_ARC_LENGTH = 9

# Point pairs (px, py, qx, qy) of the learned ORB sampling pattern.
_ORB_PATTERN = np.array(
    [
        8, -3, 9, 5, 4, 2, 7, -12, -11, 9, -8, 2, 7, -12, 12, -13,
        2, -13, 2, 12, 1, -7, 1, 6, -2, -10, -2, -4, -13, -13, -11, -8,
        -13, -3, -12, -9, 10, 4, 11, 9, -13, -8, -8, -9, -11, 7, -9, 12,
        7, 7, 12, 6, -4, -5, -3, 0, -13, 2, -12, -3, -9, 0, -7, 5,
        12, -6, 12, -1, -3, 6, -2, 12, -6, -13, -4, -8, 11, -13, 12, -8,
        4, 7, 5, 1, 5, -3, 10, -3, 3, -7, 6, 12, -8, -7, -6, -2,
        -2, 11, -1, -10, -13, 12, -8, 10, -7, 3, -5, -3, -4, 2, -3, 7,
        -10, -12, -6, 11, 5, -12, 6, -7, 5, -6, 7, -1, 1, 0, 4, -5,
        9, 11, 11, -13, 4, 7, 4, 12, 2, -1, 4, 4, -4, -12, -2, 7,
        -8, -5, -7, -10, 4, 11, 9, 12, 0, -8, 1, -13, -13, -2, -8, 2,
        -3, -2, -2, 3, -6, 9, -4, -9, 8, 12, 10, 7, 0, 9, 1, 3,
        7, -5, 11, -10, -13, -6, -11, 0, 10, 7, 12, 1, -6, -3, -6, 12,
        10, -9, 12, -4, -13, 8, -8, -12, -13, 0, -8, -4, 3, 3, 7, 8,
        5, 7, 10, -7, -1, 7, 1, -12, 3, -10, 5, 6, 2, -4, 3, -10,
        -13, 0, -13, 5, -13, -7, -12, 12, -13, 3, -11, 8, -7, 12, -4, 7,
        6, -10, 12, 8, -9, -1, -7, -6, -2, -5, 0, 12, -12, 5, -7, 5,
        3, -10, 8, -13, -7, -7, -4, 5, -3, -2, -1, -7, 2, 9, 5, -11,
        -11, -13, -5, -13, -1, 6, 0, -1, 5, -3, 5, 2, -4, -13, -4, 12,
        -9, -6, -9, 6, -12, -10, -8, -4, 10, 2, 12, -3, 7, 12, 12, 12,
        -7, -13, -6, 5, -4, 9, -3, 4, 7, -1, 12, 2, -7, 6, -5, 1,
        -13, 11, -12, 5, -3, 7, -2, -6, 7, -8, 12, -7, -13, -7, -11, -12,
        1, -3, 12, 12, 2, -6, 3, 0, -4, 3, -2, -13, -1, -13, 1, 9,
        7, 1, 8, -6, 1, -1, 3, 12, 9, 1, 12, 6, -1, -9, -1, 3,
        -13, -13, -10, 5, 7, 7, 10, 12, 12, -5, 12, 9, 6, 3, 7, 11,
        5, -13, 6, 10, 2, -12, 2, 3, 3, 8, 4, -6, 2, 6, 12, -13,
        9, -12, 10, 3, -8, 4, -7, 9, -11, 12, -4, -6, 1, 12, 2, -8,
        6, -9, 7, -4, 2, 3, 3, -2, 6, 3, 11, 0, 3, -3, 8, -8,
        7, 8, 9, 3, -11, -5, -6, -4, -10, 11, -5, 10, -5, -8, -3, 12,
        -10, 5, -9, 0, 8, -1, 12, -6, 4, -6, 6, -11, -10, 12, -8, 7,
        4, -2, 6, 7, -2, 0, -2, 12, -5, -8, -5, 2, 7, -6, 10, 12,
        -9, -13, -8, -8, -5, -13, -5, -2, 8, -8, 9, -13, -9, -11, -9, 0,
        1, -8, 1, -2, 7, -4, 9, 1, -2, 1, -1, -4, 11, -6, 12, -11,
        -12, -9, -6, 4, 3, 7, 7, 12, 5, 5, 10, 8, 0, -4, 2, 8,
        -9, 12, -5, -13, 0, 7, 2, 12, -1, 2, 1, 7, 5, 11, 7, -9,
        3, 5, 6, -8, -13, -4, -8, 9, -5, 9, -3, -3, -4, -7, -3, -12,
        6, 5, 8, 0, -7, 6, -6, 12, -13, 6, -5, -2, 1, -10, 3, 10,
        4, 1, 8, -4, -2, -2, 2, -13, 2, -12, 12, 12, -2, -13, 0, -6,
        4, 1, 9, 3, -6, -10, -3, -5, -3, -13, -1, 1, 7, 5, 12, -11,
        4, -2, 5, -7, -13, 9, -9, -5, 7, 1, 8, 6, 7, -8, 7, 6,
        -7, -4, -7, 1, -8, 11, -7, -8, -13, 6, -12, -8, 2, 4, 3, 9,
        10, -5, 12, 3, -6, -5, -6, 7, 8, -3, 9, -8, 2, -12, 2, 8,
        -11, -2, -10, 3, -12, -13, -7, -9, -11, 0, -10, -5, 5, -3, 11, 8,
        -2, -13, -1, 12, -1, -8, 0, 9, -13, -11, -12, -5, -10, -2, -10, 11,
        -3, 9, -2, -13, 2, -3, 3, 2, -9, -13, -4, 0, -4, 6, -3, -10,
        -4, 12, -2, -7, -6, -11, -4, 9, 6, -3, 6, 11, -13, 11, -5, 5,
        11, 11, 12, 6, 7, -5, 12, -2, -1, 12, 0, 7, -4, -8, -3, -2,
        -7, 1, -6, 7, -13, -12, -8, -13, -7, -2, -6, -8, -8, 5, -6, -9,
        -5, -1, -4, 5, -13, 7, -8, 10, 1, 5, 5, -13, 1, 0, 10, -13,
        9, 12, 10, -1, 5, -8, 10, -9, -1, 11, 1, -13, -9, -3, -6, 2,
        -1, -10, 1, 12, -13, 1, -8, -10, 8, -11, 10, -6, 2, -13, 3, -6,
        7, -13, 12, -9, -10, -10, -5, -7, -10, -8, -8, -13, 4, -6, 8, 5,
        3, 12, 8, -13, -4, 2, -3, -3, 5, -13, 10, -12, 4, -13, 5, -1,
        -9, 9, -4, 3, 0, 3, 3, -9, -12, 1, -6, 1, 3, 2, 4, -8,
        -10, -10, -10, 9, 8, -13, 12, 12, -8, -12, -6, -5, 2, 2, 3, 7,
        10, 6, 11, -8, 6, 8, 8, -12, -7, 10, -6, 5, -3, -9, -3, 9,
        -1, -13, -1, 5, -3, -7, -3, 4, -8, -2, -8, 3, 4, 2, 12, 12,
        2, -5, 3, 11, 6, -9, 11, -13, 3, -1, 7, 12, 11, -1, 12, 4,
        -3, 0, -3, 6, 4, -11, 4, 12, 2, -4, 2, 1, -10, -6, -8, 1,
        -13, 7, -11, 1, -13, 12, -11, -13, 6, 0, 11, -13, 0, -1, 1, 4,
        -13, 3, -9, -2, -9, 8, -6, -3, -13, -6, -8, -2, 5, -9, 8, 10,
        2, 7, 3, -9, -1, -6, -1, -1, 9, 5, 11, -2, 11, -3, 12, -8,
        3, 0, 3, 5, -1, 4, 0, 10, 3, -6, 4, 5, -13, 0, -10, 5,
        5, 8, 12, 11, 8, 9, 9, -6, 7, -4, 8, -12, -10, 4, -10, 9,
        7, 3, 12, 4, 9, -7, 10, -2, 7, 0, 12, -2, -1, -6, 0, -11,
    ],
    dtype=np.float32,
).reshape(256, 4)

_BIT_WEIGHTS = np.uint64(1) << np.arange(32, dtype=np.uint64)


def _gray(image: np.ndarray) -> np.ndarray:
    array = np.asarray(image)
    if array.ndim != 2:
        raise ValueError(f"expected a single-channel image, got shape {array.shape}")
    return array


def fast_detect(image: np.ndarray, threshold: int = FAST_THRESHOLD) -> list[KeyPoint]:
    """Detect FAST-9 corners with 3x3 non-maximum suppression, in row-major order."""
    img = _gray(image).astype(np.int32)
    h, w = img.shape
    if h < 7 or w < 7:
        return []
    center = img[3:h - 3, 3:w - 3]
    diffs = np.stack(
        [img[3 + dy:h - 3 + dy, 3 + dx:w - 3 + dx] - center for dx, dy in _CIRCLE]
    )

    # For each pixel, the largest difference that a contiguous arc of nine
    # circle pixels exceeds, brighter and darker.
    bright = np.full(center.shape, np.iinfo(np.int32).min, dtype=np.int32)
    dark = np.full(center.shape, np.iinfo(np.int32).min, dtype=np.int32)
    steps = np.arange(_ARC_LENGTH)
    for start in range(len(_CIRCLE)):
        arc = diffs[(start + steps) % len(_CIRCLE)]
        bright = np.maximum(bright, arc.min(axis=0))
        dark = np.maximum(dark, -arc.max(axis=0))

    score = np.maximum(bright, dark)
    corner = score > threshold
    score = np.where(corner, score, 0)
    neighbourhood_max = maximum_filter(score, size=3, mode="constant", cval=0)
    keep = corner & (score >= neighbourhood_max)

    ys, xs = np.nonzero(keep)
    return [
        KeyPoint(x=float(x + 3), y=float(y + 3), size=7.0, response=float(score[y, x]))
        for y, x in zip(ys, xs)
    ]


def _describe(img: np.ndarray, x: float, y: float) -> tuple[int, ...]:
    h, w = img.shape
    cx, cy = int(x), int(y)
    patch = img[cy - HALF_PATCH_SIZE:cy + HALF_PATCH_SIZE,
                cx - HALF_PATCH_SIZE:cx + HALF_PATCH_SIZE].astype(np.float32)
    offsets = np.arange(-HALF_PATCH_SIZE, HALF_PATCH_SIZE, dtype=np.float32)
    m10 = np.float32((patch * offsets[None, :]).sum())
    m01 = np.float32((patch * offsets[:, None]).sum())

    m_sqrt = np.float32(np.sqrt(m01 * m01 + m10 * m10) + 1e-18)
    sin_theta = np.float32(m01 / m_sqrt)
    cos_theta = np.float32(m10 / m_sqrt)

    px, py, qx, qy = _ORB_PATTERN.T
    fx, fy = np.float32(x), np.float32(y)
    ppx = cos_theta * px - sin_theta * py + fx
    ppy = sin_theta * px + cos_theta * py + fy
    qqx = cos_theta * qx - sin_theta * qy + fx
    qqy = sin_theta * qx + cos_theta * qy + fy

    # Rotated samples may reach past the 16-pixel margin; keep them on the image.
    def sample(xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        cols = np.clip(np.trunc(xs).astype(np.int64), 0, w - 1)
        rows = np.clip(np.trunc(ys).astype(np.int64), 0, h - 1)
        return img[rows, cols]

    bits = (sample(ppx, ppy) < sample(qqx, qqy)).reshape(DESCRIPTOR_WORDS, 32)
    words = (bits.astype(np.uint64) * _BIT_WEIGHTS).sum(axis=1)
    return tuple(int(word) for word in words)


def compute_orb(image: np.ndarray, keypoints: Sequence[KeyPoint]) -> list[Descriptor]:
    """Steered BRIEF descriptors; None for keypoints within 16 pixels of the border."""
    img = _gray(image)
    h, w = img.shape
    descriptors: list[Descriptor] = []
    for kp in keypoints:
        if (kp.x < HALF_BOUNDARY or kp.y < HALF_BOUNDARY
                or kp.x >= w - HALF_BOUNDARY or kp.y >= h - HALF_BOUNDARY):
            descriptors.append(None)
            continue
        descriptors.append(_describe(img, kp.x, kp.y))
    return descriptors


def _descriptor_array(descriptor: Sequence[int]) -> np.ndarray:
    if len(descriptor) != DESCRIPTOR_WORDS:
        raise ValueError(f"descriptor must have {DESCRIPTOR_WORDS} words, got {len(descriptor)}")
    return np.array(descriptor, dtype=np.uint32)


def bf_match(desc1: Sequence[Descriptor], desc2: Sequence[Descriptor]) -> list[DMatch]:
    """Match each descriptor to its nearest neighbour under Hamming distance below 40."""
    train = [(i, d) for i, d in enumerate(desc2) if d is not None]
    if not train:
        for d in desc1:
            if d is not None:
                _descriptor_array(d)
        return []
    train_indices = [i for i, _ in train]
    train_words = np.ascontiguousarray(np.stack([_descriptor_array(d) for _, d in train]))

    matches: list[DMatch] = []
    for i1, d1 in enumerate(desc1):
        if d1 is None:
            continue
        xor = np.ascontiguousarray(np.bitwise_xor(train_words, _descriptor_array(d1)))
        distances = np.unpackbits(xor.view(np.uint8), axis=1).sum(axis=1)
        best = int(np.argmin(distances))
        if distances[best] < MAX_MATCH_DISTANCE:
            matches.append(DMatch(i1, train_indices[best], float(distances[best])))
    return matches


def _draw_matches(
    img1: np.ndarray,
    kp1: Sequence[KeyPoint],
    img2: np.ndarray,
    kp2: Sequence[KeyPoint],
    matches: Sequence[DMatch],
) -> Image.Image:
    h1, w1 = img1.shape
    h2, w2 = img2.shape
    canvas = Image.new("RGB", (w1 + w2, max(h1, h2)))
    canvas.paste(Image.fromarray(img1.astype(np.uint8)).convert("RGB"), (0, 0))
    canvas.paste(Image.fromarray(img2.astype(np.uint8)).convert("RGB"), (w1, 0))
    draw = ImageDraw.Draw(canvas)
    colours = random.Random(0)

    def colour() -> tuple[int, int, int]:
        return (colours.randrange(256), colours.randrange(256), colours.randrange(256))

    for kp, shift in [(k, 0) for k in kp1] + [(k, w1) for k in kp2]:
        x, y = kp.x + shift, kp.y
        draw.ellipse((x - 1, y - 1, x + 1, y + 1), outline=colour())
    for m in matches:
        a, b = kp1[m.query_idx], kp2[m.train_idx]
        c = colour()
        draw.ellipse((a.x - 3, a.y - 3, a.x + 3, a.y + 3), outline=c)
        draw.ellipse((b.x + w1 - 3, b.y - 3, b.x + w1 + 3, b.y + 3), outline=c)
        draw.line((a.x, a.y, b.x + w1, b.y), fill=c)
    return canvas


def main(argv: list[str] | None = None) -> int:
    """Detect, describe and match ORB features of two images; save the matches picture."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) not in (0, 2):
        print("usage: orb [img1 img2]")
        return 1
    first_file, second_file = args if args else (DEFAULT_FIRST_FILE, DEFAULT_SECOND_FILE)
    try:
        first_image = np.asarray(Image.open(first_file).convert("L"))
        second_image = np.asarray(Image.open(second_file).convert("L"))
    except OSError as exc:
        print(f"cannot load images: {exc}", file=sys.stderr)
        return 1

    t1 = time.perf_counter()
    keypoints1 = fast_detect(first_image, FAST_THRESHOLD)
    descriptor1 = compute_orb(first_image, keypoints1)
    keypoints2 = fast_detect(second_image, FAST_THRESHOLD)
    descriptor2 = compute_orb(second_image, keypoints2)
    t2 = time.perf_counter()
    for keypoints, descriptors in ((keypoints1, descriptor1), (keypoints2, descriptor2)):
        bad = sum(d is None for d in descriptors)
        print(f"bad/total: {bad}/{len(keypoints)}")
    print(f"extract ORB cost = {t2 - t1} seconds. ")

    t1 = time.perf_counter()
    matches = bf_match(descriptor1, descriptor2)
    t2 = time.perf_counter()
    print(f"match ORB cost = {t2 - t1} seconds. ")
    print(f"matches: {len(matches)}")

    image_show = _draw_matches(first_image, keypoints1, second_image, keypoints2, matches)
    image_show.save(Path("matches.png"))
    print("done.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())