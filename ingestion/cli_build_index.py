from __future__ import annotations

import argparse
from dataclasses import asdict
from pathlib import Path

from tqdm import tqdm

from common.config import yaml_config
from common.errors import KnowledgeEngineError
from common.logger import get_logger
from ingestion.chunkers import SemanticChunker, compute_statistics
from ingestion.document_models import ChunkingOptions
from ingestion.loaders import discover_files, load_from_path
from ingestion.parser_registry import default_registry

log = get_logger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Parse and chunk a folder of documents and report chunking statistics."
    )
    parser.add_argument(
        "--input_dir", type=str, default="data/docs", help="Folder with PDF/HTML/MD/TXT files"
    )
    parser.add_argument("--min_chunk", type=int, default=yaml_config.chunking.min_chunk_size)
    parser.add_argument("--max_chunk", type=int, default=yaml_config.chunking.max_chunk_size)
    parser.add_argument("--overlap", type=int, default=yaml_config.chunking.overlap_size)
    args = parser.parse_args()

    input_dir = Path(args.input_dir)
    if not input_dir.exists():
        log.error("Input directory does not exist: %s", input_dir)
        raise SystemExit(1)

    registry = default_registry()
    chunker = SemanticChunker(ChunkingOptions(args.min_chunk, args.max_chunk, args.overlap))
    all_chunks = []
    for path in tqdm(discover_files(input_dir), desc="Chunking"):
        doc = load_from_path(path)
        try:
            parsed = registry.parse(doc.data, registry.resolve_mime_type(doc.data, doc.mime_type))
        except KnowledgeEngineError as e:
            log.warning("Skipping %s: %s", path, e)
            continue
        chunks = chunker.chunk(parsed, source_id=str(path))
        all_chunks.extend(chunks)
        print(f"{path}: '{parsed.title}' -> {len(chunks)} chunks")

    for key, value in asdict(compute_statistics(all_chunks)).items():
        print(f"{key}: {value}")


if __name__ == "__main__":
    main()
