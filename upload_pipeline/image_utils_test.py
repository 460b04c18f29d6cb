# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================


import io
import unittest
from PIL import Image as PIL_Image

from backend.gateway import InMemoryGateway
from backend.retry import NO_RETRY, RetryPolicy
from upload_pipeline import image_utils


def _png_bytes(color=(255, 0, 0), mode="RGB") -> bytes:
    buffer = io.BytesIO()
    PIL_Image.new(mode, (8, 8), color).save(buffer, format="PNG")
    return buffer.getvalue()


class CompressJpegTest(unittest.TestCase):

    def test_png_is_reencoded_as_jpeg(self):
        result = image_utils.compress_jpeg(_png_bytes())
        self.assertTrue(result.startswith(b"\xff\xd8"))
        with PIL_Image.open(io.BytesIO(result)) as img:
            self.assertEqual(img.format, "JPEG")
            self.assertEqual(img.size, (8, 8))

    def test_transparent_image_is_flattened(self):
        result = image_utils.compress_jpeg(_png_bytes((0, 0, 255, 128), mode="RGBA"))
        with PIL_Image.open(io.BytesIO(result)) as img:
            self.assertEqual(img.mode, "RGB")

    def test_undecodable_bytes_pass_through(self):
        data = b"not an image"
        self.assertEqual(image_utils.compress_jpeg(data), data)


class ImageUploadPipelineTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.gateway = InMemoryGateway()
        self.pipeline = image_utils.ImageUploadPipeline(
            self.gateway, retry_policy=NO_RETRY
        )

    async def test_upload_one_returns_url(self):
        url = await self.pipeline.upload_one(b"abc", "couples/C1/stats/main.jpg")
        self.assertEqual(url, self.gateway.storage.url_for("couples/C1/stats/main.jpg"))
        self.assertEqual(
            self.gateway.storage.stored_objects["couples/C1/stats/main.jpg"], b"abc"
        )

    async def test_upload_one_failure_returns_none(self):
        self.gateway.fail_next("upload")
        self.assertIsNone(await self.pipeline.upload_one(b"abc", "a/b.jpg"))

    async def test_upload_one_retries_transient_failures(self):
        pipeline = image_utils.ImageUploadPipeline(
            self.gateway, retry_policy=RetryPolicy(max_attempts=3, initial_delay=0)
        )
        self.gateway.fail_next("upload", times=2, transient=True)
        url = await pipeline.upload_one(b"abc", "a/b.jpg")
        self.assertIsNotNone(url)
        self.assertEqual(len(self.gateway.calls_for("upload")), 3)

    async def test_entry_images_keep_source_order(self):
        images = [_png_bytes((i * 40, 0, 0)) for i in range(3)]
        urls = await self.pipeline.upload_entry_images("C1", "e1", images)
        self.assertEqual(
            urls,
            [
                self.gateway.storage.url_for(f"couples/C1/entries/e1/img_{i}.jpg")
                for i in range(3)
            ],
        )
        for i in range(3):
            stored = self.gateway.storage.stored_objects[
                f"couples/C1/entries/e1/img_{i}.jpg"
            ]
            self.assertTrue(stored.startswith(b"\xff\xd8"))

    async def test_failed_entry_image_is_skipped(self):
        self.gateway.storage.failing_paths.add("couples/C1/entries/e1/img_0.jpg")
        urls = await self.pipeline.upload_entry_images(
            "C1", "e1", [_png_bytes(), _png_bytes()]
        )
        self.assertEqual(
            urls, [self.gateway.storage.url_for("couples/C1/entries/e1/img_1.jpg")]
        )

    async def test_hydrate_images_collects_successes(self):
        self.gateway.storage.stored_objects["x/1.jpg"] = b"one"
        self.gateway.storage.stored_objects["x/2.jpg"] = b"two"
        urls = [
            self.gateway.storage.url_for("x/1.jpg"),
            self.gateway.storage.url_for("x/missing.jpg"),
            self.gateway.storage.url_for("x/2.jpg"),
            "",
        ]
        result = await self.pipeline.hydrate_images(urls)
        self.assertCountEqual(result, [b"one", b"two"])

    async def test_hydrate_nothing(self):
        self.assertEqual(await self.pipeline.hydrate_images([]), [])


if __name__ == "__main__":
    unittest.main()
