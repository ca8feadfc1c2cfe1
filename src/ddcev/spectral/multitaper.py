"""
Multi-Taper Fourier Transform - Sensor-Domain Input for the Localizer

Slides a window over multichannel recordings, tapers each window with
discrete prolate spheroidal sequences (DPSS) and returns the complex
Fourier coefficients as a (channels, tapers, frequency, time) tensor.

Scaling
-------
Tapers have unit energy and coefficients are divided by sqrt(fs), so the
taper-averaged |X|^2 is a one-taper-per-estimate power spectral density in
units^2 / Hz (two-sided).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy import fft
from scipy.signal.windows import dpss

from ddcev.errors import ConfigurationError, DataFormatError

logger = logging.getLogger(__name__)


@dataclass
class MultitaperResult:
    """
    Output of ``multitaper_fourier``.

    Attributes
    ----------
    coefficients : np.ndarray
        Complex tensor, shape (n_channels, n_tapers, n_frequencies, n_windows).
    frequencies_hz : np.ndarray
        Frequency of each bin, shape (n_frequencies,).
    times_sec : np.ndarray
        Centre time of each window, shape (n_windows,).
    tapers : np.ndarray
        The DPSS tapers used, shape (n_tapers, window_samples).
    """

    coefficients: np.ndarray
    frequencies_hz: np.ndarray
    times_sec: np.ndarray
    tapers: np.ndarray

    @property
    def n_tapers(self) -> int:
        return self.coefficients.shape[1]


def compute_dpss(n_samples: int, half_bandwidth: float, n_tapers: int) -> np.ndarray:
    """
    Return ``n_tapers`` unit-norm DPSS tapers of length ``n_samples``.

    Parameters
    ----------
    n_samples : int
        Window length (samples).
    half_bandwidth : float
        Time half-bandwidth product NW.
    n_tapers : int
        Number of tapers, at most 2*NW - 1 for well-concentrated tapers.

    Returns
    -------
    tapers : (n_tapers, n_samples) ndarray
    """
    tapers = np.atleast_2d(dpss(n_samples, half_bandwidth, Kmax=n_tapers))
    tapers /= np.sqrt((tapers**2).sum(axis=1, keepdims=True))
    return tapers


def default_taper_count(half_bandwidth: float) -> int:
    """Standard choice K = floor(2*NW) - 1, at least one taper."""
    return max(1, int(np.floor(2.0 * half_bandwidth)) - 1)


def multitaper_fourier(
    signals: np.ndarray,
    sampling_rate_hz: float,
    window_sec: float,
    step_sec: float | None = None,
    half_bandwidth: float = 3.0,
    n_tapers: int | None = None,
    fmin: float = 0.0,
    fmax: float | None = None,
    remove_mean: bool = True,
) -> MultitaperResult:
    """
    Sliding-window multi-taper Fourier transform.

    Parameters
    ----------
    signals : np.ndarray
        Real recordings, shape (n_channels, n_samples).
    sampling_rate_hz : float
        Sampling rate.
    window_sec : float
        Window length in seconds.
    step_sec : float, optional
        Hop between window starts. Defaults to ``window_sec`` (no overlap).
    half_bandwidth : float
        Time half-bandwidth product NW. Default 3.
    n_tapers : int, optional
        Number of tapers. Default ``floor(2*NW) - 1``.
    fmin, fmax : float
        Frequency band kept, inclusive. ``fmax`` defaults to Nyquist.
    remove_mean : bool
        Subtract each window's per-channel mean before tapering.

    Returns
    -------
    MultitaperResult
        Coefficients with shape (n_channels, n_tapers, n_frequencies, n_windows).

    Raises
    ------
    DataFormatError
        If ``signals`` is not a real 2-D array or is shorter than one window.
    ConfigurationError
        If window, step, bandwidth or band parameters are invalid.

    Examples
    --------
    >>> x = np.random.randn(4, 1000)
    >>> result = multitaper_fourier(x, 250.0, window_sec=1.0, step_sec=0.5)
    >>> result.coefficients.shape
    (4, 5, 126, 7)
    """
    signals = np.asarray(signals)
    if np.iscomplexobj(signals):
        raise DataFormatError("signals must be real-valued")
    signals = signals.astype(np.float64, copy=False)
    if signals.ndim != 2:
        raise DataFormatError(
            f"signals must have shape (n_channels, n_samples), got {signals.shape}"
        )
    if sampling_rate_hz <= 0:
        raise ConfigurationError(
            f"sampling_rate_hz must be positive, got {sampling_rate_hz}"
        )

    window = int(round(window_sec * sampling_rate_hz))
    step = window if step_sec is None else int(round(step_sec * sampling_rate_hz))
    if window < 2:
        raise ConfigurationError(f"window_sec={window_sec} gives fewer than 2 samples")
    if step < 1:
        raise ConfigurationError(f"step_sec={step_sec} gives a step below 1 sample")
    n_samples = signals.shape[1]
    if n_samples < window:
        raise DataFormatError(
            f"signals have {n_samples} samples, shorter than one {window}-sample window"
        )

    if half_bandwidth <= 0 or half_bandwidth >= window / 2:
        raise ConfigurationError(
            f"half_bandwidth must lie in (0, {window / 2}), got {half_bandwidth}"
        )
    if n_tapers is None:
        n_tapers = default_taper_count(half_bandwidth)
    if n_tapers < 1:
        raise ConfigurationError(f"n_tapers must be at least 1, got {n_tapers}")

    nyquist = sampling_rate_hz / 2.0
    if fmax is None:
        fmax = nyquist
    if not 0.0 <= fmin <= fmax:
        raise ConfigurationError(f"Invalid band: fmin={fmin}, fmax={fmax}")

    tapers = compute_dpss(window, half_bandwidth, n_tapers)
    frequencies = fft.rfftfreq(window, d=1.0 / sampling_rate_hz)
    band = (frequencies >= fmin) & (frequencies <= fmax)
    if not np.any(band):
        raise ConfigurationError(
            f"No frequency bins between {fmin} and {fmax} Hz at resolution "
            f"{sampling_rate_hz / window:.4g} Hz"
        )

    starts = np.arange(0, n_samples - window + 1, step)
    # (n_channels, n_windows, window)
    segments = np.stack([signals[:, s : s + window] for s in starts], axis=1)
    if remove_mean:
        segments = segments - segments.mean(axis=-1, keepdims=True)

    # (n_channels, n_tapers, n_windows, window)
    tapered = segments[:, np.newaxis, :, :] * tapers[np.newaxis, :, np.newaxis, :]
    spectra = fft.rfft(tapered, axis=-1)[..., band] / np.sqrt(sampling_rate_hz)
    coefficients = np.moveaxis(spectra, 2, 3)  # -> (channels, tapers, freq, windows)

    logger.debug(
        "Multitaper: %d channels, %d tapers (NW=%g), %d frequencies, %d windows",
        signals.shape[0],
        n_tapers,
        half_bandwidth,
        int(band.sum()),
        starts.size,
    )
    return MultitaperResult(
        coefficients=coefficients,
        frequencies_hz=frequencies[band],
        times_sec=(starts + window / 2.0) / sampling_rate_hz,
        tapers=tapers,
    )
