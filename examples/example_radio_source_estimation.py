"""
Radio Source Estimation Examples.

This script locates a WiFi access point from crowdsourced ranging (WiFi RTT)
and RSSI readings, and estimates its transmitted power.

Implements:
    - Non-robust ranging and RSSI estimation on clean readings
    - Sequential robust estimation with 20% corrupted readings
        - Stage A: PROSAC on ranging readings only
        - Stage B: PROSAC on ranging + RSSI readings, seeded by Stage A
    - Path-loss exponent estimation in an obstructed environment

Log-distance path-loss model:
    Pr = Pt + n·k - 10·n·log10(d),   k = 10·log10(c / (4·π·f))
"""

import matplotlib.pyplot as plt
import numpy as np

from radiosource.rf import (
    RangingAndRssiRadioSourceEstimator,
    RangingAndRssiReading,
    SequentialEstimatorListener,
    SequentialRobustRangingAndRssiRadioSourceEstimator,
    StageConfig,
    WifiAccessPoint,
    rss_pathloss,
)


def simulate_readings(access_point, receivers, true_position, tx_power_dbm,
                      path_loss_exponent=2.0, outlier_ratio=0.0, seed=0):
    """Simulate RTT distances and RSSI values, corrupting a share of them."""
    rng = np.random.default_rng(seed)
    n = len(receivers)
    outliers = rng.choice(n, size=int(round(outlier_ratio * n)), replace=False)

    readings = []
    quality = np.empty(n)
    for i, p in enumerate(receivers):
        d = np.linalg.norm(p - true_position)
        rssi = rss_pathloss(tx_power_dbm, d, access_point.frequency, path_loss_exponent)
        d += 0.1 * rng.standard_normal()
        rssi += 1.0 * rng.standard_normal()
        quality[i] = rng.uniform(0.6, 1.0)
        if i in outliers:
            # Multipath: longer path and weaker signal
            d += rng.uniform(4.0, 12.0)
            rssi -= rng.uniform(8.0, 20.0)
            quality[i] = rng.uniform(0.05, 0.4)
        readings.append(
            RangingAndRssiReading(access_point, p, max(d, 0.0), rssi,
                                  distance_std=0.1, rssi_std=1.0)
        )
    return readings, quality, np.sort(outliers)


class ProgressPrinter(SequentialEstimatorListener):
    """Prints estimation progress."""

    def on_estimate_start(self, estimator):
        print("  Estimation started")

    def on_estimate_progress_change(self, estimator, progress):
        print(f"  Progress: {100 * progress:5.1f}%")

    def on_estimate_end(self, estimator):
        print("  Estimation finished")


def example_clean_readings():
    """Example 1: Non-robust estimation from clean readings."""
    print("\n" + "=" * 70)
    print("Example 1: Ranging + RSSI Estimation (clean readings)")
    print("=" * 70)

    ap = WifiAccessPoint("00:1a:2b:3c:4d:5e", 2.412e9, ssid="lab")
    true_position = np.array([12.0, 8.0])
    receivers = np.array([[0, 0], [25, 0], [25, 20], [0, 20], [12, -5], [30, 10]], dtype=float)
    readings, _, _ = simulate_readings(ap, receivers, true_position, tx_power_dbm=15.0, seed=1)

    estimator = RangingAndRssiRadioSourceEstimator(readings)
    solution = estimator.estimate()

    print(f"\nTrue position: {true_position}, true Pt: 15.0 dBm")
    print(f"Estimated position: {np.round(solution.position, 3)}")
    print(f"Estimated Pt: {solution.transmitted_power_dbm:.2f} dBm "
          f"(± {np.sqrt(solution.transmitted_power_variance):.2f} dB)")
    print(f"Position error: {np.linalg.norm(solution.position - true_position):.3f} m")


def example_sequential_robust():
    """Example 2: Sequential robust estimation with corrupted readings."""
    print("\n" + "=" * 70)
    print("Example 2: Sequential Robust Estimation (20% outliers)")
    print("=" * 70)

    ap = WifiAccessPoint("00:1a:2b:3c:4d:5f", 5.18e9, ssid="office")
    true_position = np.array([12.0, 8.0])
    rng = np.random.default_rng(42)
    receivers = rng.uniform([-10.0, -10.0], [35.0, 25.0], size=(40, 2))
    readings, quality, outliers = simulate_readings(
        ap, receivers, true_position, tx_power_dbm=18.0, outlier_ratio=0.2, seed=2
    )

    print(f"\nReadings: {len(readings)}, corrupted: {len(outliers)}")

    estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
        dimensions=2,
        readings=readings,
        quality_scores=quality,
        listener=ProgressPrinter(),
        ranging_config=StageConfig(threshold=0.5),
        rssi_config=StageConfig(threshold=3.0),
        progress_delta=0.25,
        random_state=0,
    )
    print(f"Minimum readings: {estimator.min_readings}")

    source = estimator.estimate()
    inliers = source.inliers.inliers
    detected = np.flatnonzero(~inliers)

    print(f"\nTrue position: {true_position}, true Pt: 18.0 dBm")
    print(f"Stage A position: {np.round(estimator.ranging_solution.position, 3)}")
    print(f"Final position: {np.round(source.position, 3)}")
    print(f"Final Pt: {source.transmitted_power_dbm:.2f} dBm "
          f"(± {source.transmitted_power_std_dbm:.2f} dB)")
    print(f"Position error: {np.linalg.norm(source.position - true_position):.3f} m")
    print(f"Corrupted readings: {outliers.tolist()}")
    print(f"Rejected readings:  {detected.tolist()}")

    return receivers, inliers, true_position, source


def example_path_loss_estimation():
    """Example 3: Estimating the path-loss exponent."""
    print("\n" + "=" * 70)
    print("Example 3: Path-Loss Exponent Estimation (obstructed, n = 3.0)")
    print("=" * 70)

    ap = WifiAccessPoint("00:1a:2b:3c:4d:60", 2.437e9)
    true_position = np.array([5.0, 5.0, 2.5])
    rng = np.random.default_rng(3)
    receivers = np.column_stack([
        rng.uniform(-15.0, 25.0, 30),
        rng.uniform(-15.0, 25.0, 30),
        rng.uniform(0.0, 3.0, 30),
    ])
    readings, quality, _ = simulate_readings(
        ap, receivers, true_position, tx_power_dbm=10.0,
        path_loss_exponent=3.0, outlier_ratio=0.1, seed=4,
    )

    estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
        readings=readings,
        quality_scores=quality,
        path_loss_estimation_enabled=True,
        ranging_config=StageConfig(threshold=0.5),
        rssi_config=StageConfig(threshold=3.0),
        random_state=0,
    )
    source = estimator.estimate()

    print(f"\nMinimum readings (3D, Pt and n estimated): {estimator.min_readings}")
    print(f"Estimated position: {np.round(source.position, 3)}")
    print(f"Estimated Pt: {source.transmitted_power_dbm:.2f} dBm")
    print(f"Estimated n: {source.path_loss_exponent:.3f} "
          f"(± {source.path_loss_exponent_std:.3f})")


def plot_robust_estimation(receivers, inliers, true_position, source):
    """Plot receivers, rejected readings and the estimated source."""
    plt.figure(figsize=(8, 7))

    plt.scatter(receivers[inliers, 0], receivers[inliers, 1],
                c="tab:blue", s=40, label="Inlier readings")
    plt.scatter(receivers[~inliers, 0], receivers[~inliers, 1],
                c="tab:red", marker="x", s=60, label="Rejected readings")
    plt.scatter(*true_position, c="green", marker="*", s=300,
                edgecolors="black", label="True access point", zorder=5)
    plt.scatter(*source.position, c="orange", marker="P", s=200,
                edgecolors="black", label="Estimated access point", zorder=6)

    if source.position_covariance is not None:
        # 3-sigma ellipse
        eigenvalues, eigenvectors = np.linalg.eigh(source.position_covariance)
        t = np.linspace(0.0, 2.0 * np.pi, 100)
        ellipse = eigenvectors @ (3.0 * np.sqrt(eigenvalues)[:, None] * np.vstack([np.cos(t), np.sin(t)]))
        plt.plot(source.position[0] + ellipse[0], source.position[1] + ellipse[1],
                 "k--", linewidth=1, label="3σ ellipse")

    plt.grid(True, alpha=0.3)
    plt.axis("equal")
    plt.xlabel("East (m)", fontsize=12)
    plt.ylabel("North (m)", fontsize=12)
    plt.title("Sequential Robust Radio Source Estimation", fontsize=14, fontweight="bold")
    plt.legend(loc="best")

    plt.tight_layout()
    return plt.gcf()


def main():
    """Run all radio source estimation examples."""
    print("=" * 70)
    print("Radio Source Estimation Examples")
    print("=" * 70)

    example_clean_readings()
    receivers, inliers, true_position, source = example_sequential_robust()
    example_path_loss_estimation()

    print("\n" + "=" * 70)
    print("Generating visualization...")
    print("=" * 70)

    plot_robust_estimation(receivers, inliers, true_position, source)
    plt.savefig("examples/radio_source_estimation_example.png", dpi=150, bbox_inches="tight")
    print("\nFigure saved: radio_source_estimation_example.png")

    plt.show()

    print("\n" + "=" * 70)
    print("Examples completed successfully!")
    print("=" * 70)


if __name__ == "__main__":
    main()
