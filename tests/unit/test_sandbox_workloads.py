from django.test import SimpleTestCase, override_settings, tag

from sandboxes.resources import Sandbox
from sandboxes.services.kubernetes_api import KubernetesApiError, pod_collection_path
from sandboxes.services.workloads import (
    build_sandbox_pod_manifest,
    infer_image_pull_policy,
    reconcile_sandbox_pod,
    resolve_image,
    resolve_termination_grace_period,
)
from tests.mocks.fake_kubernetes import FakeKubernetesApi, pod_item_path


def _sandbox(**spec):
    spec.setdefault("ssh", {"publicKey": "ssh-ed25519 AAA dev"})
    return Sandbox.from_dict({
        "apiVersion": "kubepark.sinoa.jp/v1alpha1",
        "kind": "Sandbox",
        "metadata": {"name": "dev", "namespace": "team-a", "uid": "uid-1"},
        "spec": spec,
    })


def _container(manifest):
    return manifest["spec"]["containers"][0]


def _env_names(container):
    return [item["name"] for item in container.get("env", [])]


@tag("batch_sandbox_controller")
class SandboxPodManifestTests(SimpleTestCase):
    def test_base_manifest(self):
        manifest = build_sandbox_pod_manifest(_sandbox())

        self.assertEqual(manifest["metadata"]["name"], "sandbox-dev")
        self.assertEqual(manifest["metadata"]["namespace"], "team-a")
        self.assertEqual(manifest["metadata"]["labels"], {"app": "kubepark", "kubepark.sinoa.jp/sandbox": "dev"})
        self.assertEqual(manifest["metadata"]["ownerReferences"][0]["uid"], "uid-1")
        self.assertNotIn("restartPolicy", manifest["spec"])
        self.assertEqual(manifest["spec"]["terminationGracePeriodSeconds"], 30)

        container = _container(manifest)
        self.assertEqual(container["name"], "sandbox")
        self.assertEqual(container["image"], "kubepark/sandbox-ssh:latest")
        self.assertEqual(container["imagePullPolicy"], "Always")
        self.assertEqual(container["ports"], [{"name": "ssh", "containerPort": 22, "protocol": "TCP"}])
        self.assertEqual(container["volumeMounts"], [{"name": "ssh-config", "mountPath": "/etc/ssh"}])
        self.assertNotIn("env", container)

        volume = manifest["spec"]["volumes"][0]
        self.assertEqual(volume["name"], "ssh-config")
        self.assertEqual(volume["configMap"]["name"], "ssh-public-key-dev")
        self.assertEqual(volume["configMap"]["items"], [{"key": "authorized_keys", "path": "authorized_keys"}])

    def test_image_resolution_order(self):
        self.assertEqual(
            resolve_image(_sandbox(image="a/top:1", container={"image": "a/container:1"}).spec),
            "a/top:1",
        )
        self.assertEqual(resolve_image(_sandbox(container={"image": "a/container:1"}).spec), "a/container:1")
        with override_settings(SANDBOX_DEFAULT_IMAGE="registry.internal/sandbox:2"):
            self.assertEqual(resolve_image(_sandbox().spec), "registry.internal/sandbox:2")

    def test_pull_policy_inference(self):
        self.assertEqual(infer_image_pull_policy("ubuntu"), "Always")
        self.assertEqual(infer_image_pull_policy("ubuntu:latest"), "Always")
        self.assertEqual(infer_image_pull_policy("registry:5000/team/ubuntu"), "Always")
        self.assertEqual(infer_image_pull_policy("ubuntu:22.04"), "IfNotPresent")
        self.assertEqual(infer_image_pull_policy("ubuntu@sha256:abcd"), "IfNotPresent")

    def test_explicit_pull_policy_wins(self):
        container = _container(build_sandbox_pod_manifest(_sandbox(container={"imagePullPolicy": "Never"})))

        self.assertEqual(container["imagePullPolicy"], "Never")

    def test_grace_period_override(self):
        self.assertEqual(resolve_termination_grace_period(_sandbox(terminationGracePeriodSeconds=5).spec), 5)
        self.assertEqual(resolve_termination_grace_period(_sandbox(terminationGracePeriodSeconds=0).spec), 0)
        self.assertEqual(resolve_termination_grace_period(_sandbox().spec), 30)

    def test_container_overrides_are_layered(self):
        sandbox = _sandbox(container={
            "resources": {"limits": {"cpu": "2"}, "requests": {"cpu": "1"}},
            "env": [{"name": "FOO", "value": "bar"}],
            "envFrom": [{"secretRef": {"name": "creds"}}],
            "volumeMounts": [{"name": "work", "mountPath": "/work"}],
            "securityContext": {"runAsNonRoot": True},
        }, ssh={"publicKey": "ssh-ed25519 AAA dev", "username": "alice"})

        container = _container(build_sandbox_pod_manifest(sandbox))

        self.assertEqual(container["resources"], {"limits": {"cpu": "2"}, "requests": {"cpu": "1"}})
        self.assertEqual(_env_names(container), ["FOO", "SSH_USERNAME"])
        self.assertEqual(container["envFrom"], [{"secretRef": {"name": "creds"}}])
        self.assertEqual(
            [mount["mountPath"] for mount in container["volumeMounts"]],
            ["/etc/ssh", "/work"],
        )
        self.assertEqual(container["securityContext"], {"runAsNonRoot": True})

    def test_ssh_username_passed_through_verbatim(self):
        container = _container(build_sandbox_pod_manifest(
            _sandbox(ssh={"publicKey": "ssh-ed25519 AAA dev", "username": "  "})
        ))
        self.assertEqual(container["env"], [{"name": "SSH_USERNAME", "value": "  "}])

        container = _container(build_sandbox_pod_manifest(
            _sandbox(ssh={"publicKey": "ssh-ed25519 AAA dev", "username": ""})
        ))
        self.assertNotIn("env", container)

    def test_pod_level_fields_copied_when_set(self):
        manifest = build_sandbox_pod_manifest(_sandbox(
            serviceAccountName="sandbox-sa",
            nodeSelector={"pool": "sandbox"},
            tolerations=[{"key": "sandbox", "operator": "Exists"}],
            imagePullSecrets=[{"name": "regcred"}],
            affinity={"nodeAffinity": {}},
            hostNetwork=True,
        ))

        pod_spec = manifest["spec"]
        self.assertEqual(pod_spec["serviceAccountName"], "sandbox-sa")
        self.assertEqual(pod_spec["nodeSelector"], {"pool": "sandbox"})
        self.assertEqual(pod_spec["tolerations"], [{"key": "sandbox", "operator": "Exists"}])
        self.assertEqual(pod_spec["imagePullSecrets"], [{"name": "regcred"}])
        self.assertEqual(pod_spec["affinity"], {"nodeAffinity": {}})
        self.assertTrue(pod_spec["hostNetwork"])

    def test_spec_hash_tracks_derived_spec(self):
        annotation = "kubepark.sinoa.jp/spec-hash"
        first = build_sandbox_pod_manifest(_sandbox())["metadata"]["annotations"][annotation]
        again = build_sandbox_pod_manifest(_sandbox())["metadata"]["annotations"][annotation]
        changed = build_sandbox_pod_manifest(_sandbox(hostNetwork=True))["metadata"]["annotations"][annotation]

        self.assertEqual(first, again)
        self.assertNotEqual(first, changed)


@tag("batch_sandbox_controller")
class SandboxPodReconcileTests(SimpleTestCase):
    def test_creates_then_leaves_matching_pod_alone(self):
        fake = FakeKubernetesApi()

        self.assertEqual(reconcile_sandbox_pod(fake, _sandbox()), "created")
        fake.calls.clear()
        self.assertEqual(reconcile_sandbox_pod(fake, _sandbox()), "unchanged")
        self.assertEqual(fake.writes(), [])

    def test_changed_spec_replaces_pod(self):
        fake = FakeKubernetesApi()
        reconcile_sandbox_pod(fake, _sandbox(serviceAccountName="old-sa"))
        path = pod_item_path("team-a", "sandbox-dev")
        old_uid = fake.get(path)["metadata"]["uid"]
        fake.calls.clear()

        outcome = reconcile_sandbox_pod(fake, _sandbox(serviceAccountName="new-sa"))

        self.assertEqual(outcome, "replaced")
        self.assertEqual(fake.writes(), [("DELETE", path), ("POST", pod_collection_path("team-a"))])
        stored = fake.get(path)
        self.assertEqual(stored["spec"]["serviceAccountName"], "new-sa")
        self.assertNotEqual(stored["metadata"]["uid"], old_uid)

    def test_pod_without_hash_is_replaced(self):
        fake = FakeKubernetesApi()
        fake.add_object(pod_collection_path("team-a"), {
            "metadata": {"name": "sandbox-dev", "namespace": "team-a"},
            "spec": {"containers": [{"name": "sandbox", "image": "old"}]},
        })

        self.assertEqual(reconcile_sandbox_pod(fake, _sandbox()), "replaced")

    def test_replacement_create_conflict_propagates(self):
        fake = FakeKubernetesApi()
        reconcile_sandbox_pod(fake, _sandbox(serviceAccountName="old-sa"))
        fake.failures[("POST", pod_collection_path("team-a"))] = 409

        with self.assertRaises(KubernetesApiError) as context:
            reconcile_sandbox_pod(fake, _sandbox(serviceAccountName="new-sa"))

        self.assertTrue(context.exception.is_conflict)

    def test_concurrent_fresh_create_is_accepted(self):
        fake = FakeKubernetesApi()
        fake.failures[("POST", pod_collection_path("team-a"))] = 409

        self.assertEqual(reconcile_sandbox_pod(fake, _sandbox()), "unchanged")
