"""Search rank tracking engine.

Runs a batch of search queries through a pool of worker threads, rotating
egress proxies and an optional captcha solver, then turns every result
list into rank records, best-rank updates and per-target scores.

Key modules:
    models      -- Run, Search, Target, SerpSnapshot, RankRecord, ... dataclasses
    config      -- RunOptions, HttpSettings, JSON run-config loader
    proxy       -- ProxyRotator over the run's egress routes
    captcha     -- CaptchaGate (present/absent variants), captcha_scope
    base        -- SerpExecutor abstract class
    scrapers    -- HttpSerpExecutor built on curl_cffi
    factory     -- ExecutorFactory, build_captcha_gate
    pacer       -- RequestPacer for per-route request pauses
    metrics     -- MetricsCollector for scrape outcomes
    aggregator  -- ResultAggregator, compute_rank
    summary     -- SummaryAccumulator for per-target scores
    controller  -- WorkerPool draining the search queue
    run         -- RunController, the run lifecycle
    storage     -- RankStore, MemoryRankStore and JsonlRankStore
"""
