import argparse
import asyncio
import atexit
import json
import logging
import sys
from contextlib import AsyncExitStack

from tqdm import tqdm

from .config import (
    DEFAULT_LIMIT,
    DEFAULT_SEMANTIC_THRESHOLD,
    EMBEDDING_SERVICE_URL,
    IMPORT_CHUNK_SIZE,
    SIGNAL_RETENTION_DAYS,
)
from .database import (
    add_to_watchlist,
    close_pool,
    get_stats,
    init_db,
    load_all_movies,
    purge_old_signals,
    save_rating,
    upsert_movies,
)
from .embedding import HttpEmbeddingProvider, TfidfEmbeddingIndex
from .engine import create_sqlite_engine
from .errors import EngineError
from .explanation import badge_for
from .models import CandidateMovie, SignalAction
from .scoring_config import WEIGHT_NAMES
from .utils import batched

logger = logging.getLogger(__name__)

atexit.register(close_pool)


def _parse_weight_pairs(pairs: list[str]) -> dict[str, float]:
    """Parse ['semantic=0.5', 'rating=0.5'] into a dict."""
    weights = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep:
            raise ValueError(f"Expected name=value, got '{pair}'")
        try:
            weights[name.strip()] = float(raw)
        except ValueError:
            raise ValueError(f"Weight '{name}' is not a number: '{raw}'")
    return weights


async def _open_provider(stack: AsyncExitStack, args: argparse.Namespace):
    kind = getattr(args, "provider", "tfidf")
    if kind == "none":
        return None
    if kind == "http":
        if not args.embedding_url:
            raise SystemExit("--embedding-url (or CINEAI_EMBEDDING_URL) is required for --provider http")
        return await stack.enter_async_context(HttpEmbeddingProvider(args.embedding_url))
    movies = [CandidateMovie.from_record(m) for m in load_all_movies()]
    return TfidfEmbeddingIndex(movies)


def cmd_init_db(args: argparse.Namespace) -> None:
    init_db()
    print("Database initialized.")


def cmd_import_movies(args: argparse.Namespace) -> None:
    """Import movies (and optionally ratings/watchlist rows) from a JSON file."""
    with open(args.file, 'r') as f:
        data = json.load(f)

    if isinstance(data, list):
        data = {'movies': data}

    init_db()

    movies, skipped = [], 0
    for record in data.get('movies', []):
        try:
            movies.append(CandidateMovie.from_record(record).to_dict())
        except ValueError as e:
            skipped += 1
            logger.warning(f"Skipping movie record: {e}")

    imported = 0
    with tqdm(total=len(movies), desc="Importing movies", unit="movie") as pbar:
        for chunk in batched(movies, IMPORT_CHUNK_SIZE):
            imported += upsert_movies(list(chunk))
            pbar.update(len(chunk))

    for row in data.get('ratings', []):
        save_rating(row['user_id'], str(row['movie_id']), float(row['rating']))
    for row in data.get('watchlist', []):
        add_to_watchlist(row['user_id'], str(row['movie_id']))

    print(f"Imported {imported} movies ({skipped} skipped), "
          f"{len(data.get('ratings', []))} ratings, {len(data.get('watchlist', []))} watchlist entries")


def _print_result(result, output_format: str) -> None:
    if output_format == "json":
        print(json.dumps(result.to_dict(), indent=2))
        return

    insights = result.insights
    print(f"\nMethod: {insights.method.value} | semantic matches: {insights.semantic_matches} | "
          f"candidates: {insights.total_candidates} | diversity: {insights.diversity_score}")
    if not result.movies:
        print("No recommendations found.")
        return

    offset = (result.pagination.current_page - 1) * result.pagination.limit
    for i, rec in enumerate(result.movies, offset + 1):
        movie = rec.movie
        year = f" ({movie.year})" if movie.year else ""
        badge = badge_for(rec.discovery_factor)
        print(f"{i:2}. {movie.title}{year}  [{badge.label}]  score {rec.score:.3f}  confidence {rec.confidence:.2f}")
        print(f"      {rec.recommendation_reason}")

    if result.pagination.has_more:
        print(f"\n... more available (page {result.pagination.current_page + 1})")


def cmd_recommend(args: argparse.Namespace) -> None:
    async def _run():
        async with AsyncExitStack() as stack:
            provider = await _open_provider(stack, args)
            engine = create_sqlite_engine(provider=provider, weights_path=args.weights_path)
            try:
                return await engine.generate_recommendations(
                    args.user,
                    query=args.query,
                    preferred_genres=args.genres,
                    mood=args.mood,
                    limit=args.limit,
                    semantic_threshold=args.threshold,
                    page=args.page,
                    exclude_seen=not args.include_seen,
                )
            finally:
                await engine.aclose()

    _print_result(asyncio.run(_run()), args.format)


def cmd_signal(args: argparse.Namespace) -> None:
    context = {
        'page_type': args.page_type,
        'recommendation_type': args.recommendation_type,
        'position_in_list': args.position,
        'session_id': args.session,
    }

    async def _run():
        engine = create_sqlite_engine(weights_path=args.weights_path)
        return await engine.recorder.record(args.user, args.movie, args.action, args.value, context)

    signal = asyncio.run(_run())
    if signal is None:
        print("Signal not recorded (see log).")
    else:
        print(f"Recorded {signal.action.value} for {signal.user_id} on {signal.movie_id}")


def cmd_remember(args: argparse.Namespace) -> None:
    async def _run():
        engine = create_sqlite_engine(weights_path=args.weights_path)
        return await engine.remember_preference(args.user, args.kind, args.value)

    profile = asyncio.run(_run())
    print(f"Remembered {args.kind} '{args.value}' for {profile.user_id}")


def cmd_weights(args: argparse.Namespace) -> None:
    engine = create_sqlite_engine(weights_path=args.weights_path)

    if args.weights_command == "set":
        vector = engine.set_weights(_parse_weight_pairs(args.pairs), updated_by=args.by)
    elif args.weights_command == "dynamic":
        vector = engine.set_dynamic_weights(args.state == "on")
    else:
        vector = engine.get_weights()

    print(f"Version: {vector.version} (revision {vector.revision})")
    for name in WEIGHT_NAMES:
        print(f"  {name:<12} {getattr(vector, name):.4f}")
    print(f"  dynamic weights: {'on' if vector.dynamic_weights_enabled else 'off'}")
    if vector.last_updated_by:
        print(f"  last updated by: {vector.last_updated_by}")


def cmd_profile(args: argparse.Namespace) -> None:
    async def _run():
        engine = create_sqlite_engine(weights_path=args.weights_path)
        return await engine.get_profile(args.user)

    profile = asyncio.run(_run())
    if profile is None:
        print(f"No behavioral profile for {args.user} yet.")
        return

    print(f"\n=== Profile for {profile.user_id} ===")
    print("\nGenre affinity:")
    for genre, value in sorted(profile.genre_affinity.items(), key=lambda kv: -kv[1]):
        print(f"  {genre:<20} {value:.3f}")
    for kind, values in sorted(profile.memory_keys.items()):
        print(f"\nStated {kind} preferences: {', '.join(sorted(values))}")
    print(f"\nSeen movies: {len(profile.seen_movie_ids)}")
    print(f"Recent signals: {len(profile.recent_signals)}")
    if profile.updated_at:
        print(f"Updated: {profile.updated_at.isoformat(timespec='seconds')}")


def cmd_reset(args: argparse.Namespace) -> None:
    async def _run():
        engine = create_sqlite_engine(weights_path=args.weights_path)
        await engine.reset_user_data(args.user)

    asyncio.run(_run())
    print(f"Reset learned data for {args.user}")


def cmd_purge_signals(args: argparse.Namespace) -> None:
    removed = purge_old_signals(args.days)
    print(f"Removed {removed} signals older than {args.days} days")


def cmd_stats(args: argparse.Namespace) -> None:
    init_db()
    stats = get_stats()
    print("\n=== Database Stats ===")
    for table, count in stats.items():
        print(f"  {table:<20} {count}")


def main():
    parser = argparse.ArgumentParser(description="CineAI recommendation engine")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--weights-path", help="Scoring weights JSON file (default: CINEAI_WEIGHTS_PATH)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    import_parser = subparsers.add_parser("import-movies", help="Import movies from a JSON file")
    import_parser.add_argument("file", help="JSON list of movies, or an object with movies/ratings/watchlist")
    import_parser.set_defaults(func=cmd_import_movies)

    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("user", help="User id")
    rec_parser.add_argument("--query", "-q", help="Free-text description of what to watch")
    rec_parser.add_argument("--genres", nargs="+", help="Preferred genres")
    rec_parser.add_argument("--mood", help="Mood to blend into the query")
    rec_parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help="Results per page")
    rec_parser.add_argument("--page", type=int, default=1, help="Page number (1-based)")
    rec_parser.add_argument("--threshold", type=float, default=DEFAULT_SEMANTIC_THRESHOLD,
                            help="Minimum semantic similarity (0-1)")
    rec_parser.add_argument("--provider", choices=["tfidf", "http", "none"], default="tfidf",
                            help="Similarity provider for --query")
    rec_parser.add_argument("--embedding-url", default=EMBEDDING_SERVICE_URL,
                            help="Base URL of the embedding service (for --provider http)")
    rec_parser.add_argument("--include-seen", action="store_true", help="Do not exclude rated/watched movies")
    rec_parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    rec_parser.set_defaults(func=cmd_recommend)

    signal_parser = subparsers.add_parser("signal", help="Record a learning signal")
    signal_parser.add_argument("user", help="User id")
    signal_parser.add_argument("movie", help="Movie id")
    signal_parser.add_argument("action", choices=[a.value for a in SignalAction], help="Interaction type")
    signal_parser.add_argument("--value", type=float, help="Rating for 'rate', minutes for 'watch_time'")
    signal_parser.add_argument("--page-type", help="Where the interaction happened")
    signal_parser.add_argument("--recommendation-type", help="Which list the movie came from")
    signal_parser.add_argument("--position", type=int, help="Position of the movie in the list")
    signal_parser.add_argument("--session", help="Session id")
    signal_parser.set_defaults(func=cmd_signal)

    remember_parser = subparsers.add_parser("remember", help="Store a stated preference")
    remember_parser.add_argument("user", help="User id")
    remember_parser.add_argument("kind", choices=["genre", "director", "actor"])
    remember_parser.add_argument("value", help="e.g. 'horror' or 'Agnès Varda'")
    remember_parser.set_defaults(func=cmd_remember)

    weights_parser = subparsers.add_parser("weights", help="Show or tune scoring weights")
    weights_sub = weights_parser.add_subparsers(dest="weights_command", required=True)
    weights_sub.add_parser("show", help="Show current weights")
    weights_set = weights_sub.add_parser("set", help="Set weights (normalized to sum to 1)")
    weights_set.add_argument("pairs", nargs="+", help="name=value pairs, e.g. semantic=0.5 rating=0.5")
    weights_set.add_argument("--by", help="Who is making the change")
    weights_dynamic = weights_sub.add_parser("dynamic", help="Toggle per-user dynamic weight adjustment")
    weights_dynamic.add_argument("state", choices=["on", "off"])
    weights_parser.set_defaults(func=cmd_weights)

    profile_parser = subparsers.add_parser("profile", help="Show a user's behavioral profile")
    profile_parser.add_argument("user", help="User id")
    profile_parser.set_defaults(func=cmd_profile)

    reset_parser = subparsers.add_parser("reset", help="Delete a user's learned profile and signals")
    reset_parser.add_argument("user", help="User id")
    reset_parser.set_defaults(func=cmd_reset)

    purge_parser = subparsers.add_parser("purge-signals", help="Delete old learning signals")
    purge_parser.add_argument("--days", type=int, default=SIGNAL_RETENTION_DAYS, help="Retention window")
    purge_parser.set_defaults(func=cmd_purge_signals)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except (EngineError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
