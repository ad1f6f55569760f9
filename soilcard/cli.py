import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from .config import load_config
from .images import SUPPORTED_EXTS
from .orchestrator import run_card_pipeline


def find_images(input_dir: str):
    """
    Retourne toutes les photos de cartes supportées dans le dossier d'entrée:
    JPG, JPEG, PNG, WEBP.
    """
    root = Path(input_dir).expanduser().resolve()
    return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in SUPPORTED_EXTS)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    # le client HTTP d'openai est très bavard en DEBUG
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main() -> None:
    # Charger .env avant toute lecture d'os.getenv (config/services)
    load_dotenv(find_dotenv(usecwd=True), override=False)

    parser = argparse.ArgumentParser(description="Numérisation de Soil Health Cards: photos → relevé JSON (Azure OpenAI vision).")
    parser.add_argument("--input", required=True, help="Dossier d'entrée contenant les photos de cartes (JPG/PNG/WEBP).")
    parser.add_argument("--out-root", required=False, help="Dossier racine de sortie (défaut: uploads)")
    parser.add_argument("--skip-existing", action="store_true", help="Ignore les images déjà traitées")
    parser.add_argument("--verbose", action="store_true", help="Journalisation DEBUG")
    args = parser.parse_args()

    _setup_logging(args.verbose)
    cfg = load_config(out_root=args.out_root, skip_existing=args.skip_existing)

    images = find_images(args.input)
    if not images:
        print("Aucune image JPG/PNG/WEBP trouvée.")
        sys.exit(0)

    print(f"{len(images)} image(s) détectée(s) → sortie: {cfg.out_root}")
    failures = 0
    for i, image in enumerate(images, start=1):
        print(f"\n[{i}/{len(images)}] {image}")
        try:
            report = asyncio.run(run_card_pipeline(str(image), cfg))
        except KeyboardInterrupt:
            print("Interrompu par l'utilisateur.")
            sys.exit(130)

        if report.skipped:
            print("⏭️  Déjà traitée, ignorée.")
        elif report.result is not None and report.result.filled_fields() == 0:
            print(f"⚠️  Aucune donnée trouvée sur la carte → saisie manuelle nécessaire. Dossier: {report.process_dir}")
        elif report.result is not None:
            print(f"✅ {report.result.filled_fields()} champ(s) rempli(s) automatiquement. Dossier: {report.process_dir}")
            for w in report.result.warnings:
                print(f"   ⚠️  {w}")
        else:
            failures += 1
            error = report.steps[-1].error if report.steps else "erreur inconnue"
            print(f"❌ Échec: {error} → saisie manuelle nécessaire.")

    if failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
