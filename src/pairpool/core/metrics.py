"""
Liquidity Pool Metrics for pairpool

Prometheus metrics for swap operations, liquidity management and pool
health monitoring.
"""

from prometheus_client import REGISTRY, Counter, Gauge, Histogram


class DEXMetrics:
    """Metrics for swaps and liquidity pools."""

    def __init__(self, registry=None):
        self.registry = registry or REGISTRY

        # Swap metrics
        self.swaps_total = Counter(
            'pairpool_swaps_total',
            'Total number of swaps executed',
            ['pool', 'token_in', 'token_out', 'status'],
            registry=self.registry
        )

        self.swap_volume = Counter(
            'pairpool_swap_volume_total',
            'Total swap volume in base units',
            ['pool', 'denom'],
            registry=self.registry
        )

        self.swap_latency = Histogram(
            'pairpool_swap_latency_seconds',
            'Swap execution latency',
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0],
            registry=self.registry
        )

        self.swap_fees_collected = Counter(
            'pairpool_swap_fees_collected_total',
            'Total swap fees collected',
            ['pool', 'denom'],
            registry=self.registry
        )

        # Liquidity metrics
        self.liquidity_added = Counter(
            'pairpool_liquidity_added_total',
            'Total liquidity added to pools',
            ['pool', 'denom'],
            registry=self.registry
        )

        self.liquidity_removed = Counter(
            'pairpool_liquidity_removed_total',
            'Total liquidity removed from pools',
            ['pool', 'denom'],
            registry=self.registry
        )

        self.pool_reserves = Gauge(
            'pairpool_pool_reserves',
            'Current pool reserves',
            ['pool', 'denom'],
            registry=self.registry
        )

        self.lp_token_supply = Gauge(
            'pairpool_lp_token_supply',
            'Liquidity share supply per pool',
            ['pool'],
            registry=self.registry
        )

        # Concentrated liquidity metrics
        self.active_liquidity = Gauge(
            'pairpool_active_liquidity',
            'Liquidity active at the current price',
            ['pool'],
            registry=self.registry
        )

        self.concentrated_liquidity_positions = Gauge(
            'pairpool_concentrated_liquidity_positions',
            'Stored concentrated liquidity positions',
            ['pool'],
            registry=self.registry
        )

        # Registry metrics
        self.pool_creations = Counter(
            'pairpool_pool_creations_total',
            'Total pools created',
            ['kind'],
            registry=self.registry
        )


# Singleton instance
_dex_metrics_instance = None


def get_dex_metrics(registry=None):
    """Get or create singleton metrics instance."""
    global _dex_metrics_instance
    if _dex_metrics_instance is None:
        _dex_metrics_instance = DEXMetrics(registry=registry)
    return _dex_metrics_instance


def track_swap(pool_id, token_in, token_out, volume, fee, duration_seconds, status='success'):
    """Track swap execution with automatic metric updates."""
    metrics = get_dex_metrics()

    metrics.swaps_total.labels(
        pool=pool_id,
        token_in=token_in,
        token_out=token_out,
        status=status
    ).inc()
    metrics.swap_volume.labels(pool=pool_id, denom=token_in).inc(volume)
    metrics.swap_fees_collected.labels(pool=pool_id, denom=token_in).inc(fee)
    metrics.swap_latency.observe(duration_seconds)


def track_liquidity_change(pool_id, denom, amount, operation='add'):
    """Track liquidity additions/removals."""
    metrics = get_dex_metrics()

    if operation == 'add':
        metrics.liquidity_added.labels(pool=pool_id, denom=denom).inc(amount)
    elif operation == 'remove':
        metrics.liquidity_removed.labels(pool=pool_id, denom=denom).inc(amount)
