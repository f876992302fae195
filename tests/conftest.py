import pytest

from netproto.dataset import DatasetBinding, SourceBinding

LENET = """\
name: "LeNet"
layer {
  name: "mnist"
  type: "Data"
  top: "data"
  top: "label"
  include {
    phase: TRAIN
  }
  transform_param {
    scale: 0.00390625
  }
  data_param {
    source: "MNIST.training"
    batch_size: 64
    backend: IMAGEDB
  }
}
layer {
  name: "mnist"
  type: "Data"
  top: "data"
  top: "label"
  include {
    phase: TEST
  }
  transform_param {
    scale: 0.00390625
  }
  data_param {
    source: "MNIST.testing"
    batch_size: 100
    backend: IMAGEDB
  }
}
layer {
  name: "conv1"
  type: "Convolution"
  bottom: "data"
  top: "conv1"
  param {
    lr_mult: 1
  }
  param {
    lr_mult: 2
  }
  convolution_param {
    num_output: 20
    kernel_size: 5
    stride: 1
    weight_filler {
      type: "xavier"
    }
  }
}
layer {
  name: "ip2"
  type: "InnerProduct"
  bottom: "conv1"
  top: "ip2"
  inner_product_param {
    num_output: 10
  }
}
layer {
  name: "accuracy"
  type: "Accuracy"
  bottom: "ip2"
  bottom: "label"
  top: "accuracy"
  include {
    phase: TEST
  }
}
layer {
  name: "loss"
  type: "SoftmaxWithLoss"
  bottom: "ip2"
  bottom: "label"
  top: "loss"
}
"""


@pytest.fixture()
def lenet_text() -> str:
    return LENET


@pytest.fixture()
def cifar_binding() -> DatasetBinding:
    return DatasetBinding(
        name="CIFAR-10",
        training=SourceBinding(
            name="CIFAR-10.training", image_height=32, image_width=32, label_count=10
        ),
        testing=SourceBinding(
            name="CIFAR-10.testing", image_height=32, image_width=32, label_count=10
        ),
    )
