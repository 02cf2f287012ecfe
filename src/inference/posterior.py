"""
Posterior point estimates, reconstruction, and ARD dimension selection.

Reconstruction of the observation matrix from posterior means:

    X_hat = (W Z + mu 1^T)^T            # (N, D), comparable to X

ARD selection keeps the latent dimensions whose column precision alpha is
smallest (large alpha pushes a loading column towards zero) and rebuilds X
from those columns only:

    X_hat_reduced = (W[:, S] Z[S, :])^T
"""

from typing import Dict, Optional, Tuple
import logging
import numpy as np
from numpy.typing import NDArray
from scipy.linalg import orthogonal_procrustes
from scipy.optimize import linear_sum_assignment

from ppca.exceptions import InvalidShape
from inference.chains import ChainStore

logger = logging.getLogger(__name__)


class PosteriorSummary:
    """
    Posterior means of the p-PCA blocks.

    Attributes
    ----------
    W : NDArray[np.float64]
        Loading matrix, shape (D, K)
    Z : NDArray[np.float64]
        Latent matrix, shape (K, N)
    mu : NDArray[np.float64]
        Offset, shape (D,)
    alpha : NDArray[np.float64] or None
        Column precisions, shape (K,) (ARD only)
    tau : float or None
        Observation precision (ARD only)
    """

    def __init__(
        self,
        W: NDArray[np.float64],
        Z: NDArray[np.float64],
        mu: NDArray[np.float64],
        alpha: Optional[NDArray[np.float64]] = None,
        tau: Optional[float] = None,
    ) -> None:
        self.W = W
        self.Z = Z
        self.mu = mu
        self.alpha = alpha
        self.tau = tau

    def as_dict(self) -> Dict[str, NDArray[np.float64]]:
        out = {"W": self.W, "Z": self.Z, "mu": self.mu}
        if self.alpha is not None:
            out["alpha"] = self.alpha
        if self.tau is not None:
            out["tau"] = np.asarray(self.tau)
        return out

    def __repr__(self) -> str:
        ard = f", alpha={np.round(self.alpha, 3)}" if self.alpha is not None else ""
        return f"PosteriorSummary(W={self.W.shape}, Z={self.Z.shape}{ard})"


class LatentAligner:
    """
    Bring every draw's latent frame into one common orientation.

    The product W Z is unchanged by W -> W R, Z -> R^T Z for orthogonal R,
    and the fixed-rank prior is too, so draws (and whole chains) may sit in
    different frames. Averaging W and Z across frames cancels the signal.
    The ARD prior is only invariant under signed permutations of the latent
    columns, which also permute alpha, so ARD draws are matched that way.

    Draws are first aligned to the highest log-density draw, then
    repeatedly to the mean of the aligned draws.

    Parameters
    ----------
    n_iterations : int
        Rounds of re-alignment to the running mean (default: 3)
    """

    def __init__(self, n_iterations: int = 3) -> None:
        if n_iterations < 1:
            raise ValueError(f"n_iterations must be >= 1. Got {n_iterations}")
        self.n_iterations = n_iterations

    @staticmethod
    def rotation(W: NDArray[np.float64], reference: NDArray[np.float64]) -> NDArray[np.float64]:
        """Orthogonal R minimizing ||W R - reference||_F, shape (K, K)."""
        if np.linalg.norm(W) < 1e-10 or np.linalg.norm(reference) < 1e-10:
            return np.eye(W.shape[1])
        R, _ = orthogonal_procrustes(W, reference)
        return R

    @staticmethod
    def signed_permutation(
        W: NDArray[np.float64],
        reference: NDArray[np.float64],
    ) -> Tuple[NDArray[np.intp], NDArray[np.float64]]:
        """
        Column order and signs matching W to reference.

        Returns
        -------
        order : NDArray[np.intp]
            ``W[:, order]`` lines up with the reference columns
        signs : NDArray[np.float64]
            +1 or -1 per reference column
        """
        overlap = reference.T @ W
        scores = np.abs(overlap)
        _, order = linear_sum_assignment(scores, maximize=True)
        # keep the current order unless matching strictly improves it
        if scores[np.arange(order.size), order].sum() <= np.trace(scores) + 1e-12:
            order = np.arange(W.shape[1])
        signs = np.sign(overlap[np.arange(order.size), order])
        signs[signs == 0] = 1.0
        return order, signs

    def _align_to(
        self,
        W: NDArray[np.float64],
        Z: NDArray[np.float64],
        alpha: Optional[NDArray[np.float64]],
        reference: NDArray[np.float64],
    ) -> Tuple[NDArray, NDArray, Optional[NDArray]]:
        if alpha is None:
            R = np.stack([self.rotation(w, reference) for w in W])
            return (
                np.einsum("sdk,skj->sdj", W, R),
                np.einsum("skj,skn->sjn", R, Z),
                None,
            )

        W_out, Z_out, alpha_out = np.empty_like(W), np.empty_like(Z), np.empty_like(alpha)
        for s in range(W.shape[0]):
            order, signs = self.signed_permutation(W[s], reference)
            W_out[s] = W[s][:, order] * signs
            Z_out[s] = Z[s][order] * signs[:, None]
            alpha_out[s] = alpha[s][order]
        return W_out, Z_out, alpha_out

    def align(self, store: ChainStore) -> Dict[str, NDArray[np.float64]]:
        """
        Aligned draws of the latent blocks, chains concatenated.

        Returns
        -------
        samples : dict
            "W" (S, D, K), "Z" (S, K, N), and for ARD fits "alpha" (S, K)
        """
        W = store.samples_for("W")
        Z = store.samples_for("Z")
        alpha = store.samples_for("alpha") if "alpha" in store.layout else None

        log_density = np.concatenate([c.log_density[c.n_warmup:] for c in store.chains])
        reference = W[int(np.argmax(log_density))]
        for _ in range(self.n_iterations):
            W_aligned, Z_aligned, alpha_aligned = self._align_to(W, Z, alpha, reference)
            reference = W_aligned.mean(axis=0)

        logger.debug(
            f"Aligned {W.shape[0]} draws by "
            f"{'signed permutation' if alpha is not None else 'rotation'}"
        )
        out = {"W": W_aligned, "Z": Z_aligned}
        if alpha_aligned is not None:
            out["alpha"] = alpha_aligned
        return out


class PosteriorSummarizer:
    """Reduce a ChainStore to point estimates and reconstructions."""

    @staticmethod
    def summarize(store: ChainStore, align: bool = True) -> PosteriorSummary:
        """
        Posterior mean of every block, in its natural layout.

        With ``align`` (the default) W, Z, and alpha are averaged after
        LatentAligner puts every draw in a common latent frame, so that
        ``reconstruct(W, Z, mu)`` of the means keeps the signal.
        """
        layout = store.layout
        tau = float(store.reshape_mean("tau")) if "tau" in layout else None
        if align:
            latent = {k: v.mean(axis=0) for k, v in LatentAligner().align(store).items()}
        else:
            latent = {"W": store.reshape_mean("W"), "Z": store.reshape_mean("Z")}
            if "alpha" in layout:
                latent["alpha"] = store.reshape_mean("alpha")
        return PosteriorSummary(
            W=latent["W"],
            Z=latent["Z"],
            mu=store.reshape_mean("mu"),
            alpha=latent.get("alpha"),
            tau=tau,
        )

    @staticmethod
    def reconstruct(
        W: NDArray[np.float64],
        Z: NDArray[np.float64],
        mu: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """
        Rebuild the observation matrix from point estimates.

        Parameters
        ----------
        W : NDArray[np.float64]
            Loadings, shape (D, K)
        Z : NDArray[np.float64]
            Latent coordinates, shape (K, N)
        mu : NDArray[np.float64]
            Offset, shape (D,)

        Returns
        -------
        X_hat : NDArray[np.float64]
            Shape (N, D)
        """
        W, Z, mu = np.asarray(W), np.asarray(Z), np.asarray(mu)
        if W.ndim != 2 or Z.ndim != 2 or W.shape[1] != Z.shape[0]:
            raise InvalidShape(f"Incompatible W {W.shape} and Z {Z.shape}")
        if mu.shape != (W.shape[0],):
            raise InvalidShape(f"mu must have shape ({W.shape[0]},). Got {mu.shape}")
        return (W @ Z + mu[:, None]).T

    @staticmethod
    def reconstruct_from_samples(store: ChainStore) -> NDArray[np.float64]:
        """
        Posterior mean of W Z + mu, averaged draw by draw.

        Unlike ``reconstruct(W_mean, Z_mean, mu_mean)`` this is unaffected by
        rotations or sign flips of the latent space between draws.
        """
        W = store.samples_for("W")
        Z = store.samples_for("Z")
        mu = store.samples_for("mu")
        mean_product = np.einsum("sdk,skn->dn", W, Z) / W.shape[0]
        return (mean_product + mu.mean(axis=0)[:, None]).T


class ARDSelector:
    """
    Pick the relevant latent dimensions of an ARD fit.

    Dimensions are ranked by ascending posterior-mean alpha; ties keep the
    original column order. The number kept is, in order of precedence:
    ``k`` if given, else all dimensions with alpha below ``threshold``, else
    the cut at the largest gap between consecutive sorted log-alphas.
    """

    def __init__(
        self,
        k: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> None:
        if k is not None and k < 1:
            raise InvalidShape(f"k must be >= 1. Got {k}")
        if threshold is not None and threshold <= 0:
            raise ValueError(f"threshold must be positive. Got {threshold}")
        self.k = k
        self.threshold = threshold

    @staticmethod
    def rank(alpha: NDArray[np.float64]) -> NDArray[np.int64]:
        """Column indices sorted by ascending alpha (stable)."""
        alpha = np.asarray(alpha, dtype=np.float64)
        if alpha.ndim != 1 or alpha.size == 0:
            raise InvalidShape(f"alpha must be a non-empty vector. Got shape {alpha.shape}")
        if np.any(alpha <= 0):
            raise ValueError("alpha must be strictly positive")
        return np.argsort(alpha, kind="stable")

    def n_selected(self, alpha: NDArray[np.float64]) -> int:
        """How many dimensions to keep for this alpha vector."""
        alpha = np.asarray(alpha, dtype=np.float64)
        if self.k is not None:
            if self.k > alpha.size:
                raise InvalidShape(f"k={self.k} exceeds the {alpha.size} available dimensions")
            return self.k
        if self.threshold is not None:
            return max(1, int(np.sum(alpha < self.threshold)))
        if alpha.size == 1:
            return 1
        sorted_log = np.log(np.sort(alpha))
        return int(np.argmax(np.diff(sorted_log))) + 1

    def select(self, alpha: NDArray[np.float64]) -> NDArray[np.int64]:
        """
        Indices of the relevant latent dimensions.

        Parameters
        ----------
        alpha : NDArray[np.float64]
            Posterior-mean column precisions, shape (K,)

        Returns
        -------
        selected : NDArray[np.int64]
            Column indices, most relevant (smallest alpha) first
        """
        order = self.rank(alpha)
        selected = order[: self.n_selected(alpha)]
        logger.info(
            "Selected %d of %d latent dimensions: %s", selected.size, order.size, selected.tolist()
        )
        return selected

    @staticmethod
    def reconstruct(
        W: NDArray[np.float64],
        Z: NDArray[np.float64],
        selected: NDArray[np.int64],
        mu: Optional[NDArray[np.float64]] = None,
    ) -> NDArray[np.float64]:
        """
        Rebuild X from the selected dimensions only.

        Parameters
        ----------
        W : NDArray[np.float64]
            Loadings, shape (D, K)
        Z : NDArray[np.float64]
            Latent coordinates, shape (K, N)
        selected : NDArray[np.int64]
            Columns of W / rows of Z to keep
        mu : NDArray[np.float64], optional
            Offset added back per feature. If None, no offset.

        Returns
        -------
        X_hat_reduced : NDArray[np.float64]
            Shape (N, D)
        """
        W, Z = np.asarray(W), np.asarray(Z)
        selected = np.asarray(selected, dtype=np.int64)
        if W.ndim != 2 or Z.ndim != 2 or W.shape[1] != Z.shape[0]:
            raise InvalidShape(f"Incompatible W {W.shape} and Z {Z.shape}")
        if selected.size and (selected.min() < 0 or selected.max() >= W.shape[1]):
            raise InvalidShape(f"selected indices out of range [0, {W.shape[1]})")
        reduced = W[:, selected] @ Z[selected, :]
        if mu is not None:
            reduced = reduced + np.asarray(mu)[:, None]
        return reduced.T


class PosteriorPredictiveCheck:
    """
    Posterior predictive checks for model validation.

    Compares observed data to replicated data drawn from the fitted model to
    assess whether the model generates plausible data.
    """

    @staticmethod
    def replicate(
        store: ChainStore,
        model,
        n_replicates: int = 200,
        seed: Optional[int] = None,
    ) -> NDArray[np.float64]:
        """
        Draw replicated observation matrices from posterior draws.

        Parameters
        ----------
        store : ChainStore
            Posterior draws
        model : ModelSpec
            Model the draws belong to (supplies the noise scale)
        n_replicates : int
            Number of replicated datasets. Default 200.
        seed : int, optional
            Seed for draw selection and observation noise.

        Returns
        -------
        replicates : NDArray[np.float64]
            Shape (n_replicates, N, D)
        """
        rng = np.random.default_rng(seed)
        flat = np.concatenate([chain.draws for chain in store.chains], axis=0)
        picks = rng.integers(0, flat.shape[0], size=n_replicates)
        params = flat[picks]

        W = store.layout.extract(params, "W")
        Z = store.layout.extract(params, "Z")
        mu = store.layout.extract(params, "mu")
        noise_sd = model.noise_sd(params)

        means = np.einsum("sdk,skn->snd", W, Z) + mu[:, None, :]
        noise = rng.standard_normal(means.shape) * np.reshape(noise_sd, (-1, 1, 1))
        return means + noise

    @staticmethod
    def compute_ppcheck(
        replicates: NDArray[np.float64],
        observed_data: NDArray[np.float64],
    ) -> Dict[str, float]:
        """
        Compute posterior predictive check statistics.

        Parameters
        ----------
        replicates : NDArray[np.float64]
            Replicated data, shape (n_replicates, N, D)
        observed_data : NDArray[np.float64]
            Observed data, shape (N, D)

        Returns
        -------
        ppc_stats : Dict[str, float]
            Posterior predictive p-values:
            - mean_pvalue: p-value for mean
            - std_pvalue: p-value for std
            - max_pvalue: p-value for max absolute value
        """
        replicates = np.asarray(replicates)
        if replicates.size == 0:
            return {}
        if replicates.shape[1:] != np.shape(observed_data):
            raise InvalidShape(
                f"Replicates {replicates.shape[1:]} do not match observed "
                f"{np.shape(observed_data)}"
            )

        axes = tuple(range(1, replicates.ndim))

        obs_mean = np.mean(observed_data)
        pp_means = np.mean(replicates, axis=axes)
        mean_pvalue = float(np.mean(pp_means >= obs_mean))

        obs_std = np.std(observed_data)
        pp_stds = np.std(replicates, axis=axes)
        std_pvalue = float(np.mean(pp_stds >= obs_std))

        obs_max = np.max(np.abs(observed_data))
        pp_maxs = np.max(np.abs(replicates), axis=axes)
        max_pvalue = float(np.mean(pp_maxs >= obs_max))

        return {
            "mean_pvalue": mean_pvalue,
            "std_pvalue": std_pvalue,
            "max_pvalue": max_pvalue,
        }
