import json
import os
import tempfile
import unittest
from pathlib import Path

from PIL import Image
from PIL.PngImagePlugin import PngInfo

from imagevault import ImageVault
from imagevault.constants import LEGACY_IMPORT_ID
from imagevault.image_metadata import parse_generation_parameters, read_image_info
from imagevault.integrity import image_id_for, scan_image_ids


def _write_png(path, size=(8, 6), text=None):
    info = PngInfo()
    for k, v in (text or {}).items():
        info.add_text(k, v)
    Image.new("RGB", size, (200, 10, 10)).save(path, pnginfo=info)


class IntegrityReconcilerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        base = Path(self.temp_dir.name)
        self.images_dir = base / "images"
        self.images_dir.mkdir()
        self.vault = await ImageVault(db_path=str(base / "db" / "images.db"), images_dir=str(self.images_dir)).open()
        self.store = self.vault.images
        self.integrity = self.vault.integrity

    async def asyncTearDown(self):
        await self.vault.close()

    async def _create(self, image_id):
        return await self.store.create({"id": image_id, "filename": f"{image_id}.png", "prompt": image_id})

    async def test_reconcile_soft_deletes_missing_and_counts_orphans(self):
        for image_id in ("A", "B", "C"):
            await self._create(image_id)
        before_b = await self.store.get("B")

        report = await self.vault.reconcile({"B", "C", "D"})

        self.assertEqual(report, {"missing_count": 1, "orphan_count": 1})
        self.assertIsNotNone((await self.store.get("A"))["deleted_at"])
        self.assertEqual(await self.store.get("B"), before_b)
        self.assertIsNone((await self.store.get("C"))["deleted_at"])
        self.assertFalse(await self.store.exists("D"))

    async def test_reconcile_is_idempotent(self):
        await self._create("A")

        first = await self.integrity.reconcile(set())
        second = await self.integrity.reconcile(set())

        self.assertEqual(first["missing_count"], 1)
        self.assertEqual(second, {"missing_count": 0, "orphan_count": 0})

    async def test_check_integrity_scans_images_dir(self):
        await self._create("kept")
        await self._create("gone")
        _write_png(self.images_dir / "kept.png")
        _write_png(self.images_dir / "stray.png")
        (self.images_dir / "kept.json").write_text("{}", encoding="utf-8")

        report = await self.integrity.check_integrity()

        self.assertEqual(report, {"missing_count": 1, "orphan_count": 1})
        self.assertIsNotNone((await self.store.get("gone"))["deleted_at"])

    async def test_legacy_import_reads_sidecars_once(self):
        _write_png(self.images_dir / "1700000000000-abcd.png", size=(16, 12))
        (self.images_dir / "1700000000000-abcd.json").write_text(
            json.dumps({"prompt": "subject: fox\nstyle: ink\n", "createdAt": "2023-11-14T22:13:20.000Z"}),
            encoding="utf-8",
        )
        _write_png(self.images_dir / "no-sidecar.png")
        (self.images_dir / "broken.png").write_bytes(b"not really a png")
        (self.images_dir / "broken.json").write_text("{not json", encoding="utf-8")

        result = await self.integrity.import_legacy()

        self.assertEqual(result, {"migrated": 3, "skipped": 0, "failed": 0})
        fox = await self.store.get("1700000000000-abcd")
        self.assertEqual(fox["prompt"], "subject: fox\nstyle: ink\n")
        self.assertEqual(fox["created_at"], "2023-11-14T22:13:20.000+00:00")
        self.assertEqual((fox["width"], fox["height"]), (16, 12))
        self.assertEqual(fox["file_size"], os.path.getsize(self.images_dir / "1700000000000-abcd.png"))
        self.assertEqual(
            await self.vault.attributes.get("1700000000000-abcd"),
            [{"key": "style", "value": "ink"}, {"key": "subject", "value": "fox"}],
        )
        broken = await self.store.get("broken")
        self.assertEqual(broken["prompt"], "")
        self.assertIsNone(broken["width"])
        self.assertTrue(await self.vault.schema.is_migration_completed(LEGACY_IMPORT_ID))

        _write_png(self.images_dir / "later.png")
        again = await self.integrity.import_legacy()

        self.assertEqual(again, {"migrated": 0, "skipped": 0, "failed": 0})
        self.assertFalse(await self.store.exists("later"))
        self.assertEqual(await self.store.count(), 3)

    async def test_legacy_import_survives_unsigned_64_bit_seed(self):
        _write_png(self.images_dir / "a.png")
        (self.images_dir / "a.json").write_text(json.dumps({"prompt": "fox", "seed": 2**64 - 1}), encoding="utf-8")
        _write_png(self.images_dir / "b.png")

        result = await self.integrity.import_legacy()

        self.assertEqual(result, {"migrated": 2, "skipped": 0, "failed": 0})
        a = await self.store.get("a")
        self.assertEqual(a["prompt"], "fox")
        self.assertIsNone(a["seed"])
        self.assertTrue(await self.store.exists("b"))
        self.assertTrue(await self.vault.schema.is_migration_completed(LEGACY_IMPORT_ID))

    async def test_legacy_import_skips_known_images(self):
        await self._create("known")
        _write_png(self.images_dir / "known.png")
        _write_png(self.images_dir / "fresh.png")

        result = await self.integrity.import_legacy()

        self.assertEqual(result, {"migrated": 1, "skipped": 1, "failed": 0})
        self.assertEqual((await self.store.get("known"))["prompt"], "known")

    async def test_legacy_import_recovers_embedded_generation_data(self):
        _write_png(
            self.images_dir / "a1111.png",
            text={"parameters": "a red fox in snow\nNegative prompt: blurry\nSteps: 20, Sampler: Euler a, Seed: 1234"},
        )

        await self.integrity.import_legacy()

        record = await self.store.get("a1111")
        self.assertEqual(record["prompt"], "a red fox in snow")
        self.assertEqual(record["negative_prompt"], "blurry")
        self.assertEqual(record["seed"], 1234)
        self.assertEqual(record["parameters"]["settings"]["Sampler"], "Euler a")

    async def test_startup_runs_import_then_reconcile(self):
        await self.vault.schema.mark_migration_completed(LEGACY_IMPORT_ID)
        await self._create("vanished")
        _write_png(self.images_dir / "orphan.png")

        report = await self.vault.startup()

        self.assertEqual(report["legacy_import"]["migrated"], 0)
        self.assertEqual(report["integrity"], {"missing_count": 1, "orphan_count": 1})


class ScanAndMetadataTests(unittest.TestCase):
    def test_image_id_for_filters_extensions(self):
        self.assertEqual(image_id_for("abc.PNG"), "abc")
        self.assertEqual(image_id_for("abc.webp"), "abc")
        self.assertIsNone(image_id_for("abc.json"))
        self.assertIsNone(image_id_for(".png"))

    def test_scan_creates_missing_directory(self):
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "nested" / "images"

            self.assertEqual(scan_image_ids(target), set())
            self.assertTrue(target.is_dir())

    def test_parse_generation_parameters(self):
        parsed = parse_generation_parameters(
            'masterpiece, 1girl\nNegative prompt: lowres\nSteps: 28, CFG scale: 7.5, Seed: 42, Lora hashes: "a: 1, b: 2"'
        )

        self.assertEqual(parsed["prompt"], "masterpiece, 1girl")
        self.assertEqual(parsed["negative_prompt"], "lowres")
        self.assertEqual(parsed["seed"], 42)
        self.assertEqual(parsed["settings"]["CFG scale"], 7.5)
        self.assertEqual(parsed["settings"]["Lora hashes"], "a: 1, b: 2")

    def test_read_image_info_keeps_json_chunks_as_parameters(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "comfy.png"
            _write_png(path, size=(4, 4), text={"prompt": json.dumps({"3": {"class_type": "KSampler"}})})

            info = read_image_info(path)

        self.assertEqual((info["width"], info["height"]), (4, 4))
        self.assertIsNone(info["prompt"])
        self.assertEqual(info["parameters"]["prompt"]["3"]["class_type"], "KSampler")

    def test_read_image_info_returns_none_for_undecodable_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "fake.png"
            path.write_bytes(b"garbage")

            self.assertIsNone(read_image_info(path))


if __name__ == "__main__":
    unittest.main()
