"""Generate report plots from the archived sweep CSV outputs."""
from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

sns.set_theme(style="whitegrid", context="talk", font_scale=0.9)


def _save(fig, path: Path) -> None:
    """Tight layout and save helper."""
    fig.tight_layout()
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=300, bbox_inches="tight")
    plt.close(fig)
    print(f"Saved {path}")


def _solved(df: pd.DataFrame) -> pd.DataFrame:
    return df[df["status"].isin(["optimal", "inaccurate"])]


def plot_transmission_tradeoff(df: pd.DataFrame, output_dir: Path) -> Path:
    """Operating cost against CVaR, one curve per Wasserstein radius."""
    df = _solved(df).sort_values(["epsilon", "rho"])
    df = df.assign(operating_cost_k=df["operating_cost"] / 1e3)

    fig, ax = plt.subplots(figsize=(8.5, 5))
    sns.lineplot(
        data=df,
        x="cvar",
        y="operating_cost_k",
        hue="epsilon",
        marker="o",
        linewidth=2.2,
        palette="viridis",
        sort=False,
        ax=ax,
    )
    ax.set_xlabel("Worst-case CVaR of line overload [MW]")
    ax.set_ylabel("Operating cost [$k]")
    ax.set_title("Cost / risk trade-off over the weight factor")
    ax.legend(title="Radius")

    path = output_dir / "plot_transmission_tradeoff.png"
    _save(fig, path)
    return path


def plot_line_cvar(df: pd.DataFrame, output_dir: Path, epsilon: Optional[float] = None) -> Path:
    """CVaR of each monitored line against rho for one radius (the largest by default)."""
    df = _solved(df)
    if epsilon is None:
        epsilon = df["epsilon"].max()
    df = df[np.isclose(df["epsilon"], epsilon)].sort_values("rho")
    cols = [c for c in df.columns if c.startswith("cvar_by_line_")]
    long = df.melt(id_vars="rho", value_vars=cols, var_name="line", value_name="line_cvar")
    long["line"] = long["line"].str.replace("cvar_by_line_", "", regex=False)

    fig, ax = plt.subplots(figsize=(8.5, 4.5))
    sns.lineplot(data=long, x="rho", y="line_cvar", hue="line", marker="o", linewidth=2.0, ax=ax)
    ax.set_xscale("log")
    ax.set_xlabel("Weight factor rho (log scale)")
    ax.set_ylabel("CVaR [MW]")
    ax.set_title(f"Monitored line CVaR, radius {epsilon:g}")
    ax.axhline(0.0, color="#444444", linewidth=0.8)

    path = output_dir / "plot_line_cvar.png"
    _save(fig, path)
    return path


def plot_distribution_epochs(df: pd.DataFrame, output_dir: Path) -> Path:
    """Operating cost and overvoltage CVaR per epoch, one curve per risk weight."""
    df = df.sort_values(["rho", "epoch"])

    fig, axes = plt.subplots(2, 1, figsize=(10, 7), sharex=True)
    sns.lineplot(data=df, x="epoch", y="operating_cost", hue="rho", palette="flare", ax=axes[0])
    axes[0].set_ylabel("Operating cost")
    axes[0].set_title("Receding-horizon feeder schedule")

    sns.lineplot(data=df, x="epoch", y="violation", hue="rho", palette="flare", legend=False, ax=axes[1])
    axes[1].set_ylabel("Overvoltage CVaR [p.u.]")
    axes[1].set_xlabel("Decision epoch")

    path = output_dir / "plot_distribution_epochs.png"
    _save(fig, path)
    return path


def plot_voltage_profile(df: pd.DataFrame, output_dir: Path, epoch: int,
                         v_min: float = 0.95, v_max: float = 1.05) -> Path:
    """Linearised (and SDP recovered, when archived) voltages of one epoch for every rho."""
    df = df[df["epoch"] == epoch]
    lin_cols = sorted((c for c in df.columns if c.startswith("linear_voltage_")),
                      key=lambda c: int(c.rsplit("_", 1)[1]))
    sdp_cols = sorted((c for c in df.columns if c.startswith("sdp_voltage_")),
                      key=lambda c: int(c.rsplit("_", 1)[1]))

    fig, ax = plt.subplots(figsize=(10, 4.5))
    palette = sns.color_palette("flare", n_colors=max(len(df), 1))
    for color, (_, row) in zip(palette, df.iterrows()):
        ax.plot(range(len(lin_cols)), row[lin_cols].to_numpy(dtype=float),
                marker="o", markersize=3, linewidth=1.6, color=color, label=f"rho={row['rho']:g}")
        if sdp_cols and not np.isnan(row[sdp_cols].to_numpy(dtype=float)).all():
            ax.plot(range(len(sdp_cols)), row[sdp_cols].to_numpy(dtype=float),
                    linestyle="--", linewidth=1.0, color=color)
    ax.axhline(v_max, color="#d62728", linestyle=":", linewidth=1.2)
    ax.axhline(v_min, color="#d62728", linestyle=":", linewidth=1.2)
    ax.set_xlabel("Node position")
    ax.set_ylabel("Voltage [p.u.]")
    ax.set_title(f"Voltage profile at epoch {epoch} (dashed: SDP recovery)")
    ax.legend(fontsize=8, ncol=2)

    path = output_dir / f"plot_voltage_epoch_{epoch}.png"
    _save(fig, path)
    return path


def plot_monte_carlo(df: pd.DataFrame, output_dir: Path) -> Optional[Path]:
    """Share of Monte Carlo samples with a rank-1 recovery, per epoch and rho."""
    if "mc_success_rate" not in df.columns:
        return None
    fig, ax = plt.subplots(figsize=(10, 4))
    sns.lineplot(data=df, x="epoch", y="mc_success_rate", hue="rho", palette="flare", ax=ax)
    ax.set_ylim(-0.05, 1.05)
    ax.set_xlabel("Decision epoch")
    ax.set_ylabel("Recovered samples [-]")
    ax.set_title("Monte Carlo verification")

    path = output_dir / "plot_monte_carlo.png"
    _save(fig, path)
    return path


def main(results_dir: Path = Path("results")) -> None:
    output_dir = results_dir / "plots"

    transmission = results_dir / "transmission_results.csv"
    if transmission.exists():
        df = pd.read_csv(transmission)
        plot_transmission_tradeoff(df, output_dir)
        plot_line_cvar(df, output_dir)

    distribution = results_dir / "distribution_results.csv"
    if distribution.exists():
        df = pd.read_csv(distribution)
        plot_distribution_epochs(df, output_dir)
        plot_monte_carlo(df, output_dir)
        solved = _solved(df)
        if len(solved):
            # epoch with the highest nominal voltage
            lin_cols = [c for c in solved.columns if c.startswith("linear_voltage_")]
            peak = solved.loc[solved[lin_cols].max(axis=1).idxmax(), "epoch"]
            plot_voltage_profile(df, output_dir, int(peak))


if __name__ == "__main__":
    main()
